from django.db.models.signals import post_save
from django.dispatch import receiver

from .models import BranchMember
from .permissions import sync_member_role_group


@receiver(post_save, sender=BranchMember)
def grant_role_capabilities(sender, instance, created, **kwargs):
    # Role groups only carry defaults; extra per-user permissions stay untouched.
    sync_member_role_group(instance)
