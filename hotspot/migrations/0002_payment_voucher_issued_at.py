from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("hotspot", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="payment",
            name="voucher_issued_at",
            field=models.DateTimeField(blank=True, null=True),
        ),
    ]
