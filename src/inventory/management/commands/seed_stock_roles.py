"""
Management command to create the stock role groups.

Each BranchMember role maps to an auth Group carrying its default stock
capabilities; existing members are re-synced into their role group.
"""

from django.core.management.base import BaseCommand
from django.db import transaction

from inventory.models import BranchMember
from inventory.permissions import ROLE_CAPABILITIES, ensure_role_group, sync_member_role_group


class Command(BaseCommand):
    help = "Create stock role groups with their default capabilities"

    def add_arguments(self, parser):
        parser.add_argument(
            "--skip-members",
            action="store_true",
            help="Only create the groups, do not re-sync existing branch members",
        )

    def handle(self, *args, **options):
        with transaction.atomic():
            for role in ROLE_CAPABILITIES:
                group = ensure_role_group(role)
                self.stdout.write(f"{group.name}: {group.permissions.count()} capabilities")

            if not options["skip_members"]:
                synced = 0
                for member in BranchMember.objects.select_related("user"):
                    sync_member_role_group(member)
                    synced += 1
                self.stdout.write(f"Re-synced {synced} branch members")

        self.stdout.write(self.style.SUCCESS("Stock roles are ready."))
