from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils.translation import gettext_lazy as _


class Branch(models.Model):
    name = models.CharField(max_length=150)
    code = models.CharField(max_length=50, unique=True, null=True, blank=True)
    address = models.CharField(max_length=200, blank=True, default="")
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return self.name


class Product(models.Model):
    name = models.CharField(max_length=150)
    code = models.CharField(max_length=50, unique=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return f"{self.code} - {self.name}"


class BranchMember(models.Model):
    ROLE_SUPER_ADMIN = "super_admin"
    ROLE_BRANCH_ADMIN = "branch_admin"
    ROLE_SALES = "sales"
    ROLE_CHOICES = [
        (ROLE_SUPER_ADMIN, "Super Admin"),
        (ROLE_BRANCH_ADMIN, "Branch Admin"),
        (ROLE_SALES, "Sales"),
    ]
    user = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="branch_membership")
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT, null=True, blank=True, related_name="memberships")
    role = models.CharField(max_length=20, choices=ROLE_CHOICES, default=ROLE_SALES)
    created_at = models.DateTimeField(auto_now_add=True)

    @property
    def is_global(self):
        return self.role == self.ROLE_SUPER_ADMIN

    def clean(self):
        super().clean()
        if not self.is_global and not self.branch_id:
            raise ValidationError({"branch": _("Branch-scoped members must be assigned to a branch.")})

    def save(self, *args, **kwargs):
        self.full_clean()
        return super().save(*args, **kwargs)

    def __str__(self):
        where = self.branch.name if self.branch_id else _("Head office")
        return f"{self.user.get_username()} @ {where} ({self.get_role_display()})"


class Stock(models.Model):
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="stocks")
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="stocks")
    quantity = models.PositiveIntegerField(default=0)
    minimum_stock = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["product", "branch"], name="uniq_stock_per_product_branch"),
        ]
        permissions = [
            ("perform_stock_opname", "Can perform stock opname"),
        ]

    @property
    def is_low_stock(self):
        return self.quantity <= self.minimum_stock

    def __str__(self):
        return f"{self.branch} - {self.product.name} ({self.quantity})"


class StockMovement(models.Model):
    TYPE_IN = "in"
    TYPE_OUT = "out"
    TYPE_CHOICES = [
        (TYPE_IN, "In"),
        (TYPE_OUT, "Out"),
    ]
    reference_number = models.CharField(max_length=40, unique=True, editable=False)
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="movements")
    type = models.CharField(max_length=3, choices=TYPE_CHOICES)
    quantity = models.PositiveIntegerField()
    notes = models.TextField(blank=True, default="")
    created_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="stock_movements")
    from_branch = models.ForeignKey(
        Branch,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="movements_out",
    )
    to_branch = models.ForeignKey(
        Branch,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="movements_in",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(from_branch__isnull=False, to_branch__isnull=True)
                    | Q(from_branch__isnull=True, to_branch__isnull=False)
                ),
                name="movement_touches_one_branch",
            ),
        ]
        indexes = [
            models.Index(fields=["product", "from_branch"], name="movement_product_from_idx"),
            models.Index(fields=["product", "to_branch"], name="movement_product_to_idx"),
        ]

    def clean(self):
        super().clean()
        if self.type == self.TYPE_IN and not self.to_branch_id:
            raise ValidationError({"to_branch": _("Incoming movements must name the receiving branch.")})
        if self.type == self.TYPE_OUT and not self.from_branch_id:
            raise ValidationError({"from_branch": _("Outgoing movements must name the issuing branch.")})

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError(_("Stock movements are append-only and cannot be changed."))
        # uniqueness and the branch check are left to the database; collisions surface as IntegrityError
        self.full_clean(validate_unique=False, validate_constraints=False)
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError(_("Stock movements are append-only and cannot be deleted."))

    def __str__(self):
        return f"{self.reference_number} {self.type} {self.quantity}"
