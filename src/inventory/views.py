import logging
from functools import wraps

from django.http import JsonResponse
from django.views.decorators.http import require_GET, require_POST

from .exceptions import NotFound, StockError
from .forms import AdjustStockForm, InitializeStockForm, StockOpnameForm
from .ledger import adjust_stock, initialize_stock, stock_opname
from .models import Stock
from .permissions import CREATE_STOCK, EDIT_STOCK, STOCK_OPNAME, ensure_stock_write
from .queries import list_stock, low_stock_alerts, movement_history, stock_for_product
from .snapshots import MovementRecord, StockSnapshot, page_payload

logger = logging.getLogger(__name__)

TRUE_VALUES = {"1", "true", "on", "yes"}


def safe_int(value, default=0):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _error(message, status, **extra):
    return JsonResponse({"status": "error", "message": message, **extra}, status=status)


def stock_endpoint(view):
    """Require a resolved actor and translate ledger errors into JSON responses."""

    @wraps(view)
    def wrapper(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return _error("Authentication required", 401)
        if getattr(request, "actor", None) is None:
            return _error("No branch membership for this account", 403)
        try:
            return view(request, *args, **kwargs)
        except StockError as exc:
            if exc.status_code >= 500:
                logger.error("Stock request %s failed: %s", request.path, exc)
            extra = {"errors": exc.errors} if getattr(exc, "errors", None) else {}
            return _error(str(exc), exc.status_code, **extra)

    return wrapper


@require_GET
@stock_endpoint
def stock_list(request):
    page = list_stock(
        actor=request.actor,
        branch_id=safe_int(request.GET.get("branch_id")) or None,
        low_stock_only=request.GET.get("low_stock", "").lower() in TRUE_VALUES,
        search=request.GET.get("search", ""),
        page=request.GET.get("page"),
    )
    return JsonResponse({"status": "success", **page_payload(page, StockSnapshot.from_stock)})


@require_GET
@stock_endpoint
def low_stock(request):
    stocks = low_stock_alerts(
        actor=request.actor,
        branch_id=safe_int(request.GET.get("branch_id")) or None,
    )
    return JsonResponse(
        {"status": "success", "results": [StockSnapshot.from_stock(stock).as_dict() for stock in stocks]}
    )


@require_GET
@stock_endpoint
def stock_by_product(request, product_id):
    stocks = stock_for_product(actor=request.actor, product_id=product_id)
    if not stocks:
        raise NotFound(f"No visible stock for product {product_id}.")
    return JsonResponse(
        {"status": "success", "results": [StockSnapshot.from_stock(stock).as_dict() for stock in stocks]}
    )


@require_POST
@stock_endpoint
def initialize(request):
    form = InitializeStockForm(request.POST)
    if not form.is_valid():
        return _error("Invalid stock data", 400, errors=form.errors.get_json_data())

    branch = form.cleaned_data["branch"]
    ensure_stock_write(request.actor, CREATE_STOCK, branch.pk)
    stock = initialize_stock(
        product_id=form.cleaned_data["product"].pk,
        branch_id=branch.pk,
        quantity=form.cleaned_data["quantity"],
        minimum_stock=form.cleaned_data["minimum_stock"],
        actor=request.actor,
    )
    return JsonResponse({"status": "success", "stock": StockSnapshot.from_stock(stock).as_dict()}, status=201)


@require_POST
@stock_endpoint
def adjust(request, stock_id):
    ensure_stock_write(request.actor, EDIT_STOCK)
    stock = Stock.objects.filter(pk=stock_id).first()
    if not stock:
        raise NotFound(f"Stock {stock_id} does not exist.")
    ensure_stock_write(request.actor, EDIT_STOCK, stock.branch_id)

    form = AdjustStockForm(request.POST)
    if not form.is_valid():
        return _error("Invalid adjustment", 400, errors=form.errors.get_json_data())

    stock = adjust_stock(
        stock_id=stock.pk,
        quantity_change=form.cleaned_data["quantity_change"],
        notes=form.cleaned_data["notes"],
        actor=request.actor,
    )
    return JsonResponse({"status": "success", "stock": StockSnapshot.from_stock(stock).as_dict()})


@require_GET
@stock_endpoint
def movements(request, stock_id):
    page = movement_history(
        actor=request.actor,
        stock_id=stock_id,
        page=request.GET.get("page"),
        from_date=request.GET.get("from_date"),
        to_date=request.GET.get("to_date"),
    )
    return JsonResponse({"status": "success", **page_payload(page, MovementRecord.from_movement)})


@require_POST
@stock_endpoint
def opname(request):
    form = StockOpnameForm(request.POST)
    if not form.is_valid():
        return _error("Invalid stock count", 400, errors=form.errors.get_json_data())

    branch = form.cleaned_data["branch"]
    ensure_stock_write(request.actor, STOCK_OPNAME, branch.pk)
    lines = stock_opname(branch_id=branch.pk, counts=form.cleaned_data["counts"], actor=request.actor)
    return JsonResponse(
        {
            "status": "success",
            "adjustments": [
                {
                    "product_id": line.product_id,
                    "system_quantity": line.system_quantity,
                    "physical_quantity": line.physical_quantity,
                    "difference": line.difference,
                }
                for line in lines
            ],
        }
    )
