"""
Stock ledger: the only writer of Stock.quantity and StockMovement rows.

Every write pairs the quantity change with an append-only movement inside one
``transaction.atomic()`` block. Callers authorize first (see ``permissions``);
nothing here checks branch scope or capabilities.
"""

import logging
from dataclasses import dataclass

from django.conf import settings
from django.db import DatabaseError, IntegrityError, transaction

from .exceptions import DuplicateStockError, InvalidInput, NotFound, ReferenceCollision, StorageError
from .models import Branch, Product, Stock, StockMovement
from .references import next_reference_number

logger = logging.getLogger(__name__)

ADJUSTMENT_NOTE = "Manual adjustment"
INITIAL_NOTE = "Initial stock"


@dataclass(frozen=True)
class OpnameLine:
    product_id: int
    system_quantity: int
    physical_quantity: int

    @property
    def difference(self):
        return self.physical_quantity - self.system_quantity


def _max_attempts():
    return max(1, int(getattr(settings, "INVENTORY_REFERENCE_MAX_ATTEMPTS", 3)))


def _taken_reference(issued):
    if not issued:
        return None
    return (
        StockMovement.objects
        .filter(reference_number__in=issued)
        .values_list("reference_number", flat=True)
        .first()
    )


def _run_atomic_write(action, write):
    """
    Run ``write(issue_reference)`` in one transaction.

    A unique violation on a reference number handed out by ``issue_reference``
    rolls the whole write back and runs it again with fresh numbers.
    """
    attempts = _max_attempts()
    last_collision = None
    for attempt in range(1, attempts + 1):
        issued = []

        def issue_reference():
            reference = next_reference_number()
            issued.append(reference)
            return reference

        try:
            with transaction.atomic():
                return write(issue_reference)
        except IntegrityError as exc:
            taken = _taken_reference(issued)
            if taken is None:
                logger.error("Stock %s failed: %s", action, exc)
                raise StorageError(f"Stock {action} failed: {exc}") from exc
            last_collision = ReferenceCollision(taken)
            logger.warning(
                "Reference %s already used during stock %s (attempt %s of %s)",
                taken,
                action,
                attempt,
                attempts,
            )
        except DatabaseError as exc:
            logger.error("Stock %s failed: %s", action, exc)
            raise StorageError(f"Stock {action} failed: {exc}") from exc

    raise StorageError(
        f"Stock {action} failed after {attempts} reference number collisions."
    ) from last_collision


def _record_movement(issue_reference, *, product_id, branch_id, incoming, quantity, notes, actor):
    return StockMovement.objects.create(
        reference_number=issue_reference(),
        product_id=product_id,
        type=StockMovement.TYPE_IN if incoming else StockMovement.TYPE_OUT,
        quantity=quantity,
        notes=notes,
        created_by=actor.user,
        to_branch_id=branch_id if incoming else None,
        from_branch_id=None if incoming else branch_id,
    )


def adjust_stock(*, stock_id, quantity_change, notes=None, actor):
    """
    Apply a signed change to one stock row and record the movement.

    The quantity is clamped at zero rather than rejected. The movement keeps the
    requested magnitude, so after a clamp it records more than was actually removed.
    A zero change is recorded as an ``out`` movement of zero.
    """

    def write(issue_reference):
        try:
            stock = Stock.objects.select_for_update().get(pk=stock_id)
        except Stock.DoesNotExist:
            raise NotFound(f"Stock {stock_id} does not exist.")

        old_quantity = stock.quantity
        requested = old_quantity + quantity_change
        stock.quantity = max(0, requested)
        stock.save(update_fields=["quantity", "updated_at"])

        movement = _record_movement(
            issue_reference,
            product_id=stock.product_id,
            branch_id=stock.branch_id,
            incoming=quantity_change > 0,
            quantity=abs(quantity_change),
            notes=notes or ADJUSTMENT_NOTE,
            actor=actor,
        )

        if requested < 0:
            logger.warning(
                "Stock %s clamped to zero: requested change %s, applied %s (movement %s)",
                stock.pk,
                quantity_change,
                stock.quantity - old_quantity,
                movement.reference_number,
            )
        logger.info(
            "Stock %s adjusted from %s to %s by user %s (movement %s)",
            stock.pk,
            old_quantity,
            stock.quantity,
            actor.user_id,
            movement.reference_number,
        )
        return stock

    return _run_atomic_write("adjustment", write)


def initialize_stock(*, product_id, branch_id, quantity, minimum_stock=0, actor):
    if quantity < 0 or minimum_stock < 0:
        raise InvalidInput("Quantity and minimum stock cannot be negative.")

    product = Product.objects.filter(pk=product_id).first()
    if not product:
        raise NotFound(f"Product {product_id} does not exist.")
    branch = Branch.objects.filter(pk=branch_id).first()
    if not branch:
        raise NotFound(f"Branch {branch_id} does not exist.")

    def write(issue_reference):
        if Stock.objects.filter(product=product, branch=branch).exists():
            raise DuplicateStockError(product.pk, branch.pk)
        try:
            with transaction.atomic():
                stock = Stock.objects.create(
                    product=product,
                    branch=branch,
                    quantity=quantity,
                    minimum_stock=minimum_stock,
                )
        except IntegrityError as exc:
            # another request initialized the same pair between the check and the insert
            raise DuplicateStockError(product.pk, branch.pk) from exc

        if quantity > 0:
            _record_movement(
                issue_reference,
                product_id=product.pk,
                branch_id=branch.pk,
                incoming=True,
                quantity=quantity,
                notes=INITIAL_NOTE,
                actor=actor,
            )

        logger.info(
            "Stock %s initialized for product %s at branch %s with %s units by user %s",
            stock.pk,
            product.pk,
            branch.pk,
            quantity,
            actor.user_id,
        )
        return stock

    return _run_atomic_write("initialization", write)


def stock_opname(*, branch_id, counts, actor):
    """
    Reset quantities at a branch to physically counted values.

    ``counts`` maps product id to counted quantity. Every product must already
    have a stock row at the branch. Products whose count matches the system
    quantity are left alone; the rest get one movement for the difference.
    """
    if any(physical < 0 for physical in counts.values()):
        raise InvalidInput("Counted quantities cannot be negative.")
    if not Branch.objects.filter(pk=branch_id).exists():
        raise NotFound(f"Branch {branch_id} does not exist.")

    def write(issue_reference):
        stocks = {
            stock.product_id: stock
            for stock in (
                Stock.objects
                .select_for_update()
                .filter(branch_id=branch_id, product_id__in=list(counts))
                .order_by("pk")
            )
        }
        missing = sorted(set(counts) - set(stocks))
        if missing:
            raise NotFound(f"No stock at branch {branch_id} for products {missing}.")

        lines = []
        for product_id, physical in sorted(counts.items()):
            stock = stocks[product_id]
            line = OpnameLine(product_id, stock.quantity, physical)
            if line.difference == 0:
                continue
            _record_movement(
                issue_reference,
                product_id=product_id,
                branch_id=branch_id,
                incoming=line.difference > 0,
                quantity=abs(line.difference),
                notes=f"Stock opname: system ({line.system_quantity}) vs physical ({physical})",
                actor=actor,
            )
            stock.quantity = physical
            stock.save(update_fields=["quantity", "updated_at"])
            lines.append(line)

        logger.info(
            "Stock opname at branch %s by user %s: %s of %s products adjusted",
            branch_id,
            actor.user_id,
            len(lines),
            len(counts),
        )
        return lines

    return _run_atomic_write("opname", write)
