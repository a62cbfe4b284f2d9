from django.core.management.base import BaseCommand

from procurement import models as orm
from procurement.domain import SetStatus
from procurement.gateway import DjangoPersistenceGateway
from procurement.sets import SetAggregator


class Command(BaseCommand):
    help = "Recompute the cached progress counters of one set or every set."

    def add_arguments(self, parser):
        parser.add_argument("--set-id", dest="set_id", help="Optional set identifier (SET-...).")

    def handle(self, *args, **options):
        set_ids = orm.MultiPartRequest.objects.order_by("created_at").values_list("set_id", flat=True)
        if options.get("set_id"):
            set_ids = set_ids.filter(set_id=options["set_id"])

        aggregator = SetAggregator(DjangoPersistenceGateway())
        completed = 0
        for set_id in set_ids:
            progress = aggregator.refresh(set_id)
            if progress.overall_status == SetStatus.COMPLETE:
                completed += 1
            self.stdout.write(
                f"{set_id}: {progress.completed_parts}/{progress.total_parts} parts complete ({progress.overall_status})"
            )

        self.stdout.write(self.style.SUCCESS(f"Set progress refresh complete. Complete sets: {completed}."))
