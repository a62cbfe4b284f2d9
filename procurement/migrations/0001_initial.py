import uuid

import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models

STATUS_CHOICES = [
    ("operations_submitted", "Operations submitted"),
    ("ecount_registered", "E-COUNT registered"),
    ("po_completed", "Purchase order completed"),
    ("warehouse_received", "Warehouse received"),
    ("partial_dispatched", "Partially dispatched"),
    ("branch_dispatched", "Dispatched to branches"),
    ("branch_received_confirmed", "Branch receipt confirmed"),
    ("logistics_issue_reported", "Logistics issue reported"),
    ("alternative_sourcing", "Alternative sourcing"),
    ("process_terminated", "Process terminated"),
]

IMPORTANCE_CHOICES = [("low", "Low"), ("medium", "Medium"), ("high", "High"), ("urgent", "Urgent")]


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="MultiPartRequest",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("set_id", models.CharField(max_length=64, unique=True)),
                ("set_name", models.CharField(max_length=255)),
                ("set_description", models.TextField(blank=True, default="")),
                ("requestor_uid", models.CharField(max_length=64)),
                ("requestor_name", models.CharField(max_length=255)),
                ("request_date", models.DateTimeField()),
                ("importance", models.CharField(choices=IMPORTANCE_CHOICES, default="medium", max_length=16)),
                (
                    "overall_status",
                    models.CharField(
                        choices=[
                            ("in_progress", "In progress"),
                            ("partial_complete", "Partially complete"),
                            ("complete", "Complete"),
                        ],
                        default="in_progress",
                        max_length=32,
                    ),
                ),
                ("completed_parts_count", models.PositiveIntegerField(default=0)),
                ("total_parts_count", models.PositiveIntegerField()),
                ("part_request_ids", models.JSONField(default=list)),
                ("allow_partial_dispatch", models.BooleanField(default=True)),
                ("notes", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "indexes": [
                    models.Index(fields=["overall_status", "created_at"], name="proc_set_status_created_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PurchaseRequest",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("request_id", models.CharField(max_length=64, unique=True)),
                ("internal_part_id", models.CharField(blank=True, default="", max_length=64)),
                ("part_number", models.CharField(max_length=128)),
                ("part_name", models.CharField(max_length=255)),
                ("price", models.DecimalField(blank=True, decimal_places=2, max_digits=14, null=True)),
                ("currency", models.CharField(default="KRW", max_length=8)),
                ("item_group1", models.CharField(blank=True, max_length=128, null=True)),
                ("item_group2", models.CharField(blank=True, max_length=128, null=True)),
                ("item_group3", models.CharField(blank=True, max_length=128, null=True)),
                ("initial_supplier", models.CharField(blank=True, max_length=255, null=True)),
                ("notes", models.TextField(blank=True, default="")),
                ("importance", models.CharField(choices=IMPORTANCE_CHOICES, default="medium", max_length=16)),
                ("requestor_uid", models.CharField(max_length=64)),
                ("requestor_name", models.CharField(max_length=255)),
                ("request_date", models.DateTimeField()),
                ("branch_requirements", models.JSONField(default=list)),
                ("logistics_stock_quantity", models.PositiveIntegerField(default=0)),
                ("total_requested_quantity", models.PositiveIntegerField()),
                ("set_id", models.CharField(blank=True, max_length=64, null=True)),
                ("set_name", models.CharField(blank=True, max_length=255, null=True)),
                ("is_part_of_set", models.BooleanField(default=False)),
                ("part_order_in_set", models.PositiveIntegerField(blank=True, null=True)),
                (
                    "current_status",
                    models.CharField(choices=STATUS_CHOICES, default="operations_submitted", max_length=32),
                ),
                (
                    "current_responsible_team",
                    models.CharField(
                        choices=[("operations", "Operations"), ("logistics", "Logistics"), ("completed", "Completed")],
                        default="logistics",
                        max_length=16,
                    ),
                ),
                ("status_comments", models.JSONField(blank=True, default=dict)),
                ("ecount_registered_at", models.DateTimeField(blank=True, null=True)),
                ("ecount_registrar_uid", models.CharField(blank=True, max_length=64, null=True)),
                ("po_completed_at", models.DateTimeField(blank=True, null=True)),
                ("po_completer_uid", models.CharField(blank=True, max_length=64, null=True)),
                ("expected_delivery_date", models.DateField(blank=True, null=True)),
                ("expected_delivery_quantity", models.PositiveIntegerField(blank=True, null=True)),
                ("actual_supplier", models.CharField(blank=True, max_length=255, null=True)),
                ("po_memo", models.TextField(blank=True, default="")),
                ("warehouse_receipt_at", models.DateTimeField(blank=True, null=True)),
                ("warehouse_receiver_uid", models.CharField(blank=True, max_length=64, null=True)),
                ("actual_received_quantity", models.PositiveIntegerField(blank=True, null=True)),
                ("branch_dispatch_quantities", models.JSONField(blank=True, null=True)),
                ("remaining_quantity", models.IntegerField(blank=True, null=True)),
                ("last_dispatched_at", models.DateTimeField(blank=True, null=True)),
                ("last_dispatcher_uid", models.CharField(blank=True, max_length=64, null=True)),
                ("branch_dispatch_completed_at", models.DateTimeField(blank=True, null=True)),
                ("branch_dispatch_completer_uid", models.CharField(blank=True, max_length=64, null=True)),
                ("dispatch_memo", models.TextField(blank=True, default="")),
                ("tracking_information", models.TextField(blank=True, default="")),
                ("branch_receipt_confirmed_at", models.DateTimeField(blank=True, null=True)),
                ("branch_receipt_confirmer_uid", models.CharField(blank=True, max_length=64, null=True)),
                ("logistics_issue", models.JSONField(blank=True, null=True)),
                ("alternative_sourcing", models.JSONField(blank=True, null=True)),
                ("process_termination", models.JSONField(blank=True, null=True)),
                ("version", models.PositiveIntegerField(default=1)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "indexes": [
                    models.Index(fields=["current_status", "updated_at"], name="proc_req_status_updated_idx"),
                    models.Index(fields=["current_responsible_team", "current_status"], name="proc_req_team_status_idx"),
                    models.Index(fields=["set_id", "part_order_in_set"], name="proc_req_set_order_idx"),
                    models.Index(fields=["created_at"], name="proc_req_created_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="StatusHistoryEntry",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("sequence", models.PositiveIntegerField()),
                ("status", models.CharField(choices=STATUS_CHOICES, max_length=32)),
                ("updated_at", models.DateTimeField()),
                ("updated_by_uid", models.CharField(max_length=64)),
                ("updated_by_name", models.CharField(max_length=255)),
                ("comments", models.TextField(blank=True, default="")),
                (
                    "request",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="history",
                        to="procurement.purchaserequest",
                    ),
                ),
            ],
            options={
                "ordering": ["sequence"],
                "constraints": [
                    models.UniqueConstraint(fields=("request", "sequence"), name="proc_history_request_sequence_unique"),
                ],
            },
        ),
    ]
