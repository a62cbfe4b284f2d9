import uuid

from django.db import models
from django.utils import timezone

from procurement.domain import Importance, RequestStatus, ResponsibleTeam, SetStatus


class PurchaseRequest(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    request_id = models.CharField(max_length=64, unique=True)
    internal_part_id = models.CharField(max_length=64, blank=True, default="")
    part_number = models.CharField(max_length=128)
    part_name = models.CharField(max_length=255)
    price = models.DecimalField(max_digits=14, decimal_places=2, null=True, blank=True)
    currency = models.CharField(max_length=8, default="KRW")
    item_group1 = models.CharField(max_length=128, null=True, blank=True)
    item_group2 = models.CharField(max_length=128, null=True, blank=True)
    item_group3 = models.CharField(max_length=128, null=True, blank=True)
    initial_supplier = models.CharField(max_length=255, null=True, blank=True)
    notes = models.TextField(blank=True, default="")
    importance = models.CharField(max_length=16, choices=Importance, default=Importance.MEDIUM)
    requestor_uid = models.CharField(max_length=64)
    requestor_name = models.CharField(max_length=255)
    request_date = models.DateTimeField()
    branch_requirements = models.JSONField(default=list)
    logistics_stock_quantity = models.PositiveIntegerField(default=0)
    total_requested_quantity = models.PositiveIntegerField()

    set_id = models.CharField(max_length=64, null=True, blank=True)
    set_name = models.CharField(max_length=255, null=True, blank=True)
    is_part_of_set = models.BooleanField(default=False)
    part_order_in_set = models.PositiveIntegerField(null=True, blank=True)

    current_status = models.CharField(max_length=32, choices=RequestStatus, default=RequestStatus.OPERATIONS_SUBMITTED)
    current_responsible_team = models.CharField(max_length=16, choices=ResponsibleTeam, default=ResponsibleTeam.LOGISTICS)
    status_comments = models.JSONField(default=dict, blank=True)

    ecount_registered_at = models.DateTimeField(null=True, blank=True)
    ecount_registrar_uid = models.CharField(max_length=64, null=True, blank=True)

    po_completed_at = models.DateTimeField(null=True, blank=True)
    po_completer_uid = models.CharField(max_length=64, null=True, blank=True)
    expected_delivery_date = models.DateField(null=True, blank=True)
    expected_delivery_quantity = models.PositiveIntegerField(null=True, blank=True)
    actual_supplier = models.CharField(max_length=255, null=True, blank=True)
    po_memo = models.TextField(blank=True, default="")

    warehouse_receipt_at = models.DateTimeField(null=True, blank=True)
    warehouse_receiver_uid = models.CharField(max_length=64, null=True, blank=True)
    actual_received_quantity = models.PositiveIntegerField(null=True, blank=True)

    branch_dispatch_quantities = models.JSONField(null=True, blank=True)
    remaining_quantity = models.IntegerField(null=True, blank=True)
    last_dispatched_at = models.DateTimeField(null=True, blank=True)
    last_dispatcher_uid = models.CharField(max_length=64, null=True, blank=True)
    branch_dispatch_completed_at = models.DateTimeField(null=True, blank=True)
    branch_dispatch_completer_uid = models.CharField(max_length=64, null=True, blank=True)
    dispatch_memo = models.TextField(blank=True, default="")
    tracking_information = models.TextField(blank=True, default="")

    branch_receipt_confirmed_at = models.DateTimeField(null=True, blank=True)
    branch_receipt_confirmer_uid = models.CharField(max_length=64, null=True, blank=True)

    logistics_issue = models.JSONField(null=True, blank=True)
    alternative_sourcing = models.JSONField(null=True, blank=True)
    process_termination = models.JSONField(null=True, blank=True)

    version = models.PositiveIntegerField(default=1)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        indexes = [
            models.Index(fields=["current_status", "updated_at"], name="proc_req_status_updated_idx"),
            models.Index(fields=["current_responsible_team", "current_status"], name="proc_req_team_status_idx"),
            models.Index(fields=["set_id", "part_order_in_set"], name="proc_req_set_order_idx"),
            models.Index(fields=["created_at"], name="proc_req_created_idx"),
        ]

    def __str__(self):
        return f"{self.request_id} {self.part_name}"


class StatusHistoryEntry(models.Model):
    id = models.BigAutoField(primary_key=True)
    request = models.ForeignKey(PurchaseRequest, on_delete=models.CASCADE, related_name="history")
    sequence = models.PositiveIntegerField()
    status = models.CharField(max_length=32, choices=RequestStatus)
    updated_at = models.DateTimeField()
    updated_by_uid = models.CharField(max_length=64)
    updated_by_name = models.CharField(max_length=255)
    comments = models.TextField(blank=True, default="")

    class Meta:
        ordering = ["sequence"]
        constraints = [
            models.UniqueConstraint(fields=["request", "sequence"], name="proc_history_request_sequence_unique"),
        ]


class MultiPartRequest(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    set_id = models.CharField(max_length=64, unique=True)
    set_name = models.CharField(max_length=255)
    set_description = models.TextField(blank=True, default="")
    requestor_uid = models.CharField(max_length=64)
    requestor_name = models.CharField(max_length=255)
    request_date = models.DateTimeField()
    importance = models.CharField(max_length=16, choices=Importance, default=Importance.MEDIUM)
    overall_status = models.CharField(max_length=32, choices=SetStatus, default=SetStatus.IN_PROGRESS)
    completed_parts_count = models.PositiveIntegerField(default=0)
    total_parts_count = models.PositiveIntegerField()
    part_request_ids = models.JSONField(default=list)
    allow_partial_dispatch = models.BooleanField(default=True)
    notes = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        indexes = [
            models.Index(fields=["overall_status", "created_at"], name="proc_set_status_created_idx"),
        ]

    def __str__(self):
        return f"{self.set_id} {self.set_name}"
