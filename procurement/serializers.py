from rest_framework import serializers

from core.models import Branch
from procurement.domain import Importance


class BranchRequirementSerializer(serializers.Serializer):
    branch_id = serializers.CharField()
    branch_name = serializers.CharField()
    requested_quantity = serializers.IntegerField()


class BranchDispatchInfoSerializer(serializers.Serializer):
    branch_id = serializers.CharField()
    branch_name = serializers.CharField()
    required_quantity = serializers.IntegerField()
    dispatched_quantity = serializers.IntegerField()
    is_dispatched = serializers.BooleanField()
    actual_dispatched_quantity = serializers.IntegerField(allow_null=True)
    dispatched_at = serializers.DateTimeField(allow_null=True)
    dispatched_by_uid = serializers.CharField(allow_null=True)
    confirmed_quantity = serializers.IntegerField(allow_null=True)
    branch_receipt_memo = serializers.CharField(allow_blank=True)


class StatusHistoryEntrySerializer(serializers.Serializer):
    status = serializers.CharField()
    updated_at = serializers.DateTimeField()
    updated_by_uid = serializers.CharField()
    updated_by_name = serializers.CharField()
    comments = serializers.CharField(allow_blank=True)


class ClassificationSerializer(serializers.Serializer):
    group1 = serializers.CharField()
    group2 = serializers.CharField()
    group3 = serializers.CharField()


class EcountRegistrationSerializer(serializers.Serializer):
    registered_at = serializers.DateTimeField()
    registrar_uid = serializers.CharField()


class PurchaseOrderInfoSerializer(serializers.Serializer):
    completed_at = serializers.DateTimeField()
    completer_uid = serializers.CharField()
    expected_delivery_date = serializers.DateField()
    expected_delivery_quantity = serializers.IntegerField()
    actual_supplier = serializers.CharField()
    memo = serializers.CharField(allow_blank=True)


class WarehouseReceiptSerializer(serializers.Serializer):
    received_at = serializers.DateTimeField()
    receiver_uid = serializers.CharField()
    actual_received_quantity = serializers.IntegerField()


class DispatchProgressSerializer(serializers.Serializer):
    remaining_quantity = serializers.IntegerField()
    last_dispatched_at = serializers.DateTimeField()
    last_dispatcher_uid = serializers.CharField()
    completed_at = serializers.DateTimeField(allow_null=True)
    completer_uid = serializers.CharField(allow_null=True)
    memo = serializers.CharField(allow_blank=True)
    tracking_information = serializers.CharField(allow_blank=True)


class ReceiptConfirmationSerializer(serializers.Serializer):
    confirmed_at = serializers.DateTimeField()
    confirmer_uid = serializers.CharField()


class LogisticsIssueSerializer(serializers.Serializer):
    reported_at = serializers.DateTimeField()
    reporter_uid = serializers.CharField()
    reporter_name = serializers.CharField()
    issue_type = serializers.CharField()
    description = serializers.CharField()
    urgency_level = serializers.CharField()
    alternative_required = serializers.BooleanField()
    estimated_delay = serializers.IntegerField(allow_null=True)


class AlternativeSourcingSerializer(serializers.Serializer):
    initiated_at = serializers.DateTimeField()
    initiator_uid = serializers.CharField()
    initiator_name = serializers.CharField()
    method = serializers.CharField()
    description = serializers.CharField()
    estimated_cost = serializers.DecimalField(max_digits=14, decimal_places=2, allow_null=True)
    estimated_delivery = serializers.DateField(allow_null=True)


class ProcessTerminationSerializer(serializers.Serializer):
    terminated_at = serializers.DateTimeField()
    terminator_uid = serializers.CharField()
    terminator_name = serializers.CharField()
    reason = serializers.CharField()
    final_notes = serializers.CharField()


class PurchaseRequestSerializer(serializers.Serializer):
    """Read representation of a ``procurement.domain.PurchaseRequest``."""

    id = serializers.CharField()
    request_id = serializers.CharField()
    internal_part_id = serializers.CharField()
    part_number = serializers.CharField()
    part_name = serializers.CharField()
    price = serializers.DecimalField(max_digits=14, decimal_places=2, allow_null=True)
    currency = serializers.CharField()
    classification = ClassificationSerializer(allow_null=True)
    initial_supplier = serializers.CharField(allow_null=True)
    notes = serializers.CharField(allow_blank=True)
    importance = serializers.CharField()
    requestor_uid = serializers.CharField()
    requestor_name = serializers.CharField()
    request_date = serializers.DateTimeField()
    branch_requirements = BranchRequirementSerializer(many=True)
    logistics_stock_quantity = serializers.IntegerField()
    total_requested_quantity = serializers.IntegerField()
    set_id = serializers.CharField(allow_null=True)
    set_name = serializers.CharField(allow_null=True)
    is_part_of_set = serializers.BooleanField()
    part_order_in_set = serializers.IntegerField(allow_null=True)
    current_status = serializers.CharField()
    current_responsible_team = serializers.CharField()
    status_history = StatusHistoryEntrySerializer(many=True)
    status_comments = serializers.DictField(child=serializers.CharField())
    registration = EcountRegistrationSerializer(allow_null=True)
    purchase_order = PurchaseOrderInfoSerializer(allow_null=True)
    warehouse_receipt = WarehouseReceiptSerializer(allow_null=True)
    actual_received_quantity = serializers.IntegerField(allow_null=True)
    dispatch = DispatchProgressSerializer(allow_null=True)
    branch_dispatch_quantities = BranchDispatchInfoSerializer(source="ledger", many=True)
    receipt_confirmation = ReceiptConfirmationSerializer(allow_null=True)
    logistics_issue = LogisticsIssueSerializer(allow_null=True)
    alternative_sourcing = AlternativeSourcingSerializer(allow_null=True)
    process_termination = ProcessTerminationSerializer(allow_null=True)
    version = serializers.IntegerField()
    created_at = serializers.DateTimeField()
    updated_at = serializers.DateTimeField()


class MultiPartRequestSerializer(serializers.Serializer):
    id = serializers.CharField()
    set_id = serializers.CharField()
    set_name = serializers.CharField()
    set_description = serializers.CharField(allow_blank=True)
    requestor_uid = serializers.CharField()
    requestor_name = serializers.CharField()
    request_date = serializers.DateTimeField()
    importance = serializers.CharField()
    overall_status = serializers.CharField()
    completed_parts_count = serializers.IntegerField()
    total_parts_count = serializers.IntegerField()
    part_request_ids = serializers.ListField(child=serializers.CharField())
    allow_partial_dispatch = serializers.BooleanField()
    notes = serializers.CharField(allow_blank=True)
    created_at = serializers.DateTimeField()
    updated_at = serializers.DateTimeField()


class SetProgressSerializer(serializers.Serializer):
    set_id = serializers.CharField()
    set_name = serializers.CharField()
    total_parts = serializers.IntegerField()
    completed_parts = serializers.IntegerField()
    in_progress_parts = serializers.IntegerField()
    pending_parts = serializers.IntegerField()
    progress_percentage = serializers.FloatField()
    overall_status = serializers.CharField()
    last_updated = serializers.DateTimeField()


class BranchRequirementInputSerializer(serializers.Serializer):
    branch_id = serializers.PrimaryKeyRelatedField(queryset=Branch.objects.filter(is_active=True))
    branch_name = serializers.CharField(required=False, allow_blank=True)
    requested_quantity = serializers.IntegerField(min_value=0)

    def validate(self, attrs):
        branch = attrs["branch_id"]
        return {
            "branch_id": str(branch.id),
            "branch_name": attrs.get("branch_name") or branch.name,
            "requested_quantity": attrs["requested_quantity"],
        }


class PartInputSerializer(serializers.Serializer):
    part_number = serializers.CharField(max_length=128)
    part_name = serializers.CharField(max_length=255)
    importance = serializers.ChoiceField(choices=Importance.choices, required=False)
    price = serializers.DecimalField(max_digits=14, decimal_places=2, min_value=0, required=False, allow_null=True)
    currency = serializers.CharField(max_length=8, required=False, allow_blank=True)
    item_group1 = serializers.CharField(max_length=128, required=False, allow_blank=True, allow_null=True)
    item_group2 = serializers.CharField(max_length=128, required=False, allow_blank=True, allow_null=True)
    item_group3 = serializers.CharField(max_length=128, required=False, allow_blank=True, allow_null=True)
    initial_supplier = serializers.CharField(max_length=255, required=False, allow_blank=True, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True)
    branch_requirements = BranchRequirementInputSerializer(many=True, allow_empty=False)
    logistics_stock_quantity = serializers.IntegerField(min_value=0, default=0)
    comments = serializers.CharField(required=False, allow_blank=True)

    def validate_branch_requirements(self, value):
        branch_ids = [item["branch_id"] for item in value]
        if len(branch_ids) != len(set(branch_ids)):
            raise serializers.ValidationError("Each branch can be listed only once.")
        requested = [item for item in value if item["requested_quantity"] > 0]
        if not requested:
            raise serializers.ValidationError("Request a quantity for at least one branch.")
        return requested


class IndividualPartsInputSerializer(serializers.Serializer):
    parts = PartInputSerializer(many=True, allow_empty=False)


class MultiPartRequestInputSerializer(serializers.Serializer):
    set_name = serializers.CharField(max_length=255)
    set_description = serializers.CharField(required=False, allow_blank=True)
    importance = serializers.ChoiceField(choices=Importance.choices, default=Importance.MEDIUM)
    notes = serializers.CharField(required=False, allow_blank=True)
    parts = PartInputSerializer(many=True, allow_empty=False)


class BulkProcessInputSerializer(serializers.Serializer):
    request_ids = serializers.ListField(child=serializers.UUIDField(), allow_empty=False)
    values = serializers.DictField(required=False, default=dict)
    overrides = serializers.DictField(child=serializers.DictField(), required=False, default=dict)
    branch_toggles = serializers.DictField(child=serializers.BooleanField(), required=False, default=dict)

    def validate_overrides(self, value):
        rows_field = serializers.ListField(child=serializers.DictField())
        for request_pk, fields in value.items():
            if "branch_dispatch_quantities" not in fields:
                continue
            try:
                fields["branch_dispatch_quantities"] = rows_field.run_validation(fields["branch_dispatch_quantities"])
            except serializers.ValidationError as exc:
                raise serializers.ValidationError({request_pk: {"branch_dispatch_quantities": exc.detail}})
        return value
