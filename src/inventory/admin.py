from django.contrib import admin

from .models import Branch, BranchMember, Product, Stock, StockMovement

admin.site.register(Branch)
admin.site.register(Product)
admin.site.register(BranchMember)


@admin.register(Stock)
class StockAdmin(admin.ModelAdmin):
    list_display = ("product", "branch", "quantity", "minimum_stock", "updated_at")
    list_filter = ("branch",)
    search_fields = ("product__name", "product__code")
    # quantity only moves through the ledger so every change has a movement
    readonly_fields = ("product", "branch", "quantity")

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(StockMovement)
class StockMovementAdmin(admin.ModelAdmin):
    list_display = ("reference_number", "product", "type", "quantity", "from_branch", "to_branch", "created_by", "created_at")
    list_filter = ("type", "from_branch", "to_branch")
    search_fields = ("reference_number", "product__name", "product__code")

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
