# Generated migration file for initial database schema

from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone
import uuid


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Tenant",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("slug", models.SlugField(unique=True)),
                ("business_name", models.CharField(max_length=200)),
                ("voucher_prefix", models.CharField(default="BIL", max_length=8)),
                ("default_currency", models.CharField(default="UGX", max_length=3)),
                ("max_devices", models.PositiveIntegerField(default=5)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["business_name"],
            },
        ),
        migrations.CreateModel(
            name="NetworkDevice",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=100)),
                ("host", models.CharField(max_length=255)),
                ("port", models.PositiveIntegerField(default=8728)),
                ("username", models.CharField(max_length=100)),
                ("password_encrypted", models.TextField(blank=True)),
                ("use_ssl", models.BooleanField(default=False)),
                ("status", models.CharField(choices=[("online", "Online"), ("offline", "Offline"), ("error", "Error")], default="offline", max_length=20)),
                ("last_seen", models.DateTimeField(blank=True, null=True)),
                ("uptime_seconds", models.BigIntegerField(default=0)),
                ("last_error", models.TextField(blank=True)),
                ("last_failure_kind", models.CharField(blank=True, choices=[("timeout", "Timeout"), ("unreachable", "Unreachable"), ("auth_failure", "Auth Failure"), ("protocol_error", "Protocol Error")], max_length=20)),
                ("consecutive_failures", models.PositiveIntegerField(default=0)),
                ("identity", models.CharField(blank=True, max_length=100)),
                ("router_version", models.CharField(blank=True, max_length=50)),
                ("router_model", models.CharField(blank=True, max_length=100)),
                ("configuration", models.JSONField(blank=True, null=True)),
                ("backup_configuration", models.JSONField(blank=True, null=True)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("tenant", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="devices", to="hotspot.tenant")),
            ],
            options={
                "ordering": ["name"],
                "unique_together": {("tenant", "name")},
                "indexes": [models.Index(fields=["tenant", "status"], name="device_tenant_status_idx")],
            },
        ),
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("transaction_id", models.CharField(max_length=100, unique=True)),
                ("reference", models.CharField(blank=True, max_length=100)),
                ("provider", models.CharField(default="manual", max_length=30)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("currency", models.CharField(default="UGX", max_length=3)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("completed", "Completed"), ("failed", "Failed"), ("refunded", "Refunded"), ("cancelled", "Cancelled")], default="pending", max_length=20)),
                ("customer_phone", models.CharField(blank=True, max_length=20)),
                ("gateway_response", models.JSONField(blank=True, default=dict)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("audit_trail", models.JSONField(blank=True, default=list)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
                ("failure_reason", models.TextField(blank=True)),
                ("disputed_at", models.DateTimeField(blank=True, null=True)),
                ("dispute_reason", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("device", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="payments", to="hotspot.networkdevice")),
                ("tenant", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="payments", to="hotspot.tenant")),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["tenant", "status"], name="payment_tenant_status_idx")],
            },
        ),
        migrations.CreateModel(
            name="Voucher",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("code", models.CharField(max_length=32)),
                ("password", models.CharField(max_length=32)),
                ("profile", models.CharField(default="DEFAULT", max_length=50)),
                ("validity_hours", models.PositiveIntegerField(default=24)),
                ("data_limit_mb", models.PositiveIntegerField(blank=True, null=True)),
                ("price", models.DecimalField(decimal_places=2, max_digits=12)),
                ("currency", models.CharField(default="UGX", max_length=3)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("active", "Active"), ("used", "Used"), ("expired", "Expired"), ("disabled", "Disabled")], default="pending", max_length=20)),
                ("activated_at", models.DateTimeField(blank=True, null=True)),
                ("expires_at", models.DateTimeField(blank=True, null=True)),
                ("used_at", models.DateTimeField(blank=True, null=True)),
                ("notification_sent_at", models.DateTimeField(blank=True, null=True)),
                ("usage_stats", models.JSONField(blank=True, default=dict)),
                ("device_metadata", models.JSONField(blank=True, default=dict)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("payment", models.OneToOneField(on_delete=django.db.models.deletion.PROTECT, related_name="voucher", to="hotspot.payment")),
                ("tenant", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="vouchers", to="hotspot.tenant")),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["tenant", "status"], name="voucher_tenant_status_idx"),
                    models.Index(fields=["status", "expires_at"], name="voucher_status_expiry_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=("tenant", "code"), name="unique_voucher_code_per_tenant"),
                ],
            },
        ),
        migrations.CreateModel(
            name="DeviceUser",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("username", models.CharField(max_length=100)),
                ("password", models.CharField(blank=True, max_length=100)),
                ("profile", models.CharField(default="default", max_length=50)),
                ("is_active", models.BooleanField(default=True)),
                ("last_synced_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("device", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="users", to="hotspot.networkdevice")),
                ("voucher", models.OneToOneField(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="device_user", to="hotspot.voucher")),
            ],
            options={
                "ordering": ["username"],
                "unique_together": {("device", "username")},
            },
        ),
        migrations.CreateModel(
            name="ConfigHistory",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("configuration_data", models.JSONField()),
                ("change_type", models.CharField(choices=[("backup", "Backup"), ("restore", "Restore"), ("update", "Update")], max_length=10)),
                ("changed_by", models.CharField(blank=True, max_length=100, null=True)),
                ("created_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ("device", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="config_history", to="hotspot.networkdevice")),
            ],
            options={
                "ordering": ["created_at", "id"],
                "verbose_name_plural": "Config history",
            },
        ),
        migrations.CreateModel(
            name="SystemLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("log_type", models.CharField(db_index=True, max_length=50)),
                ("severity", models.CharField(choices=[("info", "Info"), ("warning", "Warning"), ("critical", "Critical")], default="info", max_length=10)),
                ("message", models.TextField(blank=True)),
                ("data", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("tenant", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.CASCADE, related_name="system_logs", to="hotspot.tenant")),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "indexes": [
                    models.Index(fields=["tenant", "log_type"], name="syslog_tenant_type_idx"),
                    models.Index(fields=["severity", "created_at"], name="syslog_severity_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="BackgroundJob",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("kind", models.CharField(choices=[("process_payment", "Process payment"), ("provision_voucher", "Provision voucher"), ("revoke_voucher", "Revoke voucher"), ("initialize_device", "Initialize device monitoring")], max_length=30)),
                ("payload", models.JSONField(blank=True, default=dict)),
                ("dedupe_key", models.CharField(blank=True, max_length=150, null=True, unique=True)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("running", "Running"), ("retrying", "Retrying"), ("succeeded", "Succeeded"), ("failed", "Failed")], default="pending", max_length=20)),
                ("attempts", models.PositiveIntegerField(default=0)),
                ("max_attempts", models.PositiveIntegerField(default=3)),
                ("next_run_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("deadline_at", models.DateTimeField(blank=True, null=True)),
                ("locked_by", models.CharField(blank=True, max_length=100)),
                ("locked_at", models.DateTimeField(blank=True, null=True)),
                ("last_error", models.TextField(blank=True)),
                ("result", models.JSONField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("finished_at", models.DateTimeField(blank=True, null=True)),
                ("tenant", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.CASCADE, related_name="jobs", to="hotspot.tenant")),
            ],
            options={
                "ordering": ["next_run_at", "id"],
                "indexes": [models.Index(fields=["status", "next_run_at"], name="job_status_next_run_idx")],
            },
        ),
    ]
