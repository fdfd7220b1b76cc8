from django.conf import settings
from django.core.paginator import Paginator
from django.db.models import Q

from .exceptions import InvalidInput, NotFound
from .filters import StockFilter, StockMovementFilter
from .models import Stock, StockMovement
from .permissions import ensure_stock_view


def _paginate(queryset, page):
    paginator = Paginator(queryset, getattr(settings, "INVENTORY_PAGE_SIZE", 20))
    return paginator.get_page(page or 1)


def _scoped_stock(actor):
    queryset = Stock.objects.select_related("product", "branch")
    if not actor.is_global:
        queryset = queryset.filter(branch_id=actor.branch_id)
    return queryset


def list_stock(*, actor, branch_id=None, low_stock_only=False, search="", page=1):
    """
    Page through stock rows, most depleted first.

    Branch-scoped actors always see their own branch; a requested branch_id is
    only honoured for global actors.
    """
    ensure_stock_view(actor)
    if not actor.is_global:
        branch_id = actor.branch_id

    data = {"low_stock": bool(low_stock_only), "search": search or ""}
    if branch_id:
        data["branch_id"] = branch_id
    stock_filter = StockFilter(data, queryset=_scoped_stock(actor).order_by("quantity", "pk"))
    return _paginate(stock_filter.qs, page)


def movement_history(*, actor, stock_id, page=1, from_date=None, to_date=None):
    ensure_stock_view(actor)
    stock = Stock.objects.filter(pk=stock_id).first()
    if not stock:
        raise NotFound(f"Stock {stock_id} does not exist.")
    ensure_stock_view(actor, stock.branch_id)

    queryset = (
        StockMovement.objects
        .select_related("created_by", "from_branch", "to_branch")
        .filter(product_id=stock.product_id)
        .filter(Q(from_branch_id=stock.branch_id) | Q(to_branch_id=stock.branch_id))
        .order_by("-created_at", "-id")
    )
    movement_filter = StockMovementFilter(
        {"from_date": from_date or "", "to_date": to_date or ""},
        queryset=queryset,
    )
    if not movement_filter.is_valid():
        raise InvalidInput("Invalid date range.", errors=movement_filter.errors.get_json_data())
    return _paginate(movement_filter.qs, page)


def low_stock_alerts(*, actor, branch_id=None):
    ensure_stock_view(actor)
    data = {"low_stock": True}
    if branch_id and actor.is_global:
        data["branch_id"] = branch_id
    stock_filter = StockFilter(data, queryset=_scoped_stock(actor).order_by("quantity", "pk"))
    return list(stock_filter.qs)


def stock_for_product(*, actor, product_id):
    ensure_stock_view(actor)
    return list(_scoped_stock(actor).filter(product_id=product_id).order_by("-quantity", "pk"))
