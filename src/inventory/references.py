import string

from django.conf import settings
from django.utils import timezone
from django.utils.crypto import get_random_string

REFERENCE_CHARS = string.ascii_uppercase + string.digits


def next_reference_number(today=None):
    """
    Build a movement reference such as ``STK-20260105-4QZ81A``.

    Nothing is checked against existing rows; the unique index on
    StockMovement.reference_number is the guard and the ledger retries on conflict.
    """
    prefix = getattr(settings, "INVENTORY_REFERENCE_PREFIX", "STK")
    length = getattr(settings, "INVENTORY_REFERENCE_SUFFIX_LENGTH", 6)
    today = today or timezone.localdate()
    suffix = get_random_string(length, allowed_chars=REFERENCE_CHARS)
    return f"{prefix}-{today:%Y%m%d}-{suffix}"
