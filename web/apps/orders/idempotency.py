"""Idempotency records for the checkout endpoint.

A client retrying ``complete-payment`` with the same ``Idempotency-Key``
and body gets the stored response instead of a second order and charge.
Reusing the key with another body is a conflict.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .exceptions import IdempotencyConflictError
from .models import IdempotencyKey


def request_hash(payload: dict) -> str:
    """Stable SHA-256 of a JSON payload (sorted keys, compact separators)."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def get_or_create_idempotent(key: str, payload: dict):
    """Get-or-create the record for ``key``.

    The create path runs in a nested savepoint so an IntegrityError (the
    key already exists) only rolls back that block; the existing row is
    then read under ``select_for_update``.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, record)``.

    Raises:
        IdempotencyConflictError: The key was used with a different payload.
    """
    h = request_hash(payload)
    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(key=key, request_hash=h, response_status=0, response_body={})
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise IdempotencyConflictError(f"Idempotency-Key {key!r} was used with a different payload")
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None):
    """Store the response so retries with the same key can replay it."""
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order"])
