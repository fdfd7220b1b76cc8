from dataclasses import dataclass, field

from django.contrib.auth.models import Group, Permission

from .exceptions import Forbidden
from .models import BranchMember

CREATE_STOCK = "inventory.add_stock"
EDIT_STOCK = "inventory.change_stock"
VIEW_STOCK = "inventory.view_stock"
STOCK_OPNAME = "inventory.perform_stock_opname"

ROLE_CAPABILITIES = {
    BranchMember.ROLE_SUPER_ADMIN: {CREATE_STOCK, EDIT_STOCK, VIEW_STOCK, STOCK_OPNAME},
    BranchMember.ROLE_BRANCH_ADMIN: {CREATE_STOCK, EDIT_STOCK, VIEW_STOCK, STOCK_OPNAME},
    BranchMember.ROLE_SALES: {VIEW_STOCK},
}


@dataclass(frozen=True)
class Actor:
    user: object
    branch_id: int | None
    is_global: bool
    capabilities: frozenset = field(default_factory=frozenset)

    @property
    def user_id(self):
        return self.user.pk


def resolve_actor(user):
    """
    Resolve the acting principal for stock operations.

    Superusers act globally even without a membership row. Everyone else needs a
    BranchMember; capabilities come from the user's Django permissions, not the role name.
    """
    if not user or not user.is_authenticated or not user.is_active:
        return None

    member = (
        BranchMember.objects
        .select_related("branch")
        .filter(user=user)
        .first()
    )
    if not member and not user.is_superuser:
        return None

    is_global = user.is_superuser or member.is_global
    branch_id = member.branch_id if member else None
    return Actor(
        user=user,
        branch_id=branch_id,
        is_global=is_global,
        capabilities=frozenset(user.get_all_permissions()),
    )


def can_access_branch(actor, branch_id):
    if actor is None:
        return False
    if actor.is_global:
        return True
    return actor.branch_id is not None and actor.branch_id == branch_id


def has_capability(actor, capability):
    if actor is None:
        return False
    return capability in actor.capabilities


def can_perform_stock_write(actor, capability):
    return capability in (CREATE_STOCK, EDIT_STOCK, STOCK_OPNAME) and has_capability(actor, capability)


def ensure_stock_write(actor, capability, branch_id=None):
    if not can_perform_stock_write(actor, capability):
        raise Forbidden(f"Missing capability {capability}.")
    if branch_id is not None and not can_access_branch(actor, branch_id):
        raise Forbidden(f"No access to branch {branch_id}.")


def ensure_stock_view(actor, branch_id=None):
    if not has_capability(actor, VIEW_STOCK):
        raise Forbidden(f"Missing capability {VIEW_STOCK}.")
    if branch_id is not None and not can_access_branch(actor, branch_id):
        raise Forbidden(f"No access to branch {branch_id}.")


def _permissions_for(capabilities):
    permissions = []
    for capability in sorted(capabilities):
        app_label, codename = capability.split(".", 1)
        permissions.append(
            Permission.objects.get(content_type__app_label=app_label, codename=codename)
        )
    return permissions


def ensure_role_group(role):
    """Create or refresh the auth Group carrying a role's default capabilities."""
    group, _ = Group.objects.get_or_create(name=dict(BranchMember.ROLE_CHOICES)[role])
    group.permissions.set(_permissions_for(ROLE_CAPABILITIES[role]))
    return group


def sync_member_role_group(member):
    role_group_names = [label for _, label in BranchMember.ROLE_CHOICES]
    group = ensure_role_group(member.role)
    stale = Group.objects.filter(name__in=role_group_names).exclude(pk=group.pk)
    member.user.groups.remove(*stale)
    member.user.groups.add(group)
    return group
