from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("storefront", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="ordermodel",
            name="notified_at",
            field=models.DateTimeField(blank=True, null=True),
        ),
    ]
