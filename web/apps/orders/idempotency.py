"""Idempotency utilities for safely handling duplicate requests.

This module stores and retrieves idempotency keys to safely de-duplicate
order creation requests. It supports creating an idempotent record,
detecting conflicts when the same key is used with a different payload, and
finalizing a stored response so subsequent retries can short-circuit.
"""

import hashlib, json
from django.db import transaction, IntegrityError

from .errors import IdempotencyConflict
from .models import IdempotencyKey


def _hash(payload: dict) -> str:
    """Compute a stable SHA-256 hash for a JSON-serializable payload.

    The payload is serialized with sorted keys and compact separators to
    ensure a deterministic representation before hashing.
    """
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def get_or_create_idempotent(key: str, payload: dict):
    """Get-or-create an idempotency record for the given key and payload.

    Behavior:
        - First request with a new key: create a record and return
          ``(False, rec)``.
        - Retry with the same key and payload: lock and return
          ``(True, rec)``.
        - Same key with a different payload: raise ``IdempotencyConflict``.

    The create path runs in a nested savepoint so an IntegrityError only
    rolls back that block; the existing-record path takes a row lock
    (SELECT ... FOR UPDATE) to avoid races under concurrency.

    Args:
        key: Client-provided idempotency key.
        payload: Request payload used to compute the request hash. Callers
            include the acting user so two users cannot share a key.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, rec)``.
    """
    h = _hash(payload)

    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(
                key=key, request_hash=h, response_status=0, response_body={}
            )
            return False, rec  # created: caller will finalize the response
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise IdempotencyConflict(key=key)
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None):
    """Persist the final response for an idempotent request.

    Stores the HTTP status code and response body, and optionally links the
    record to the created order. Later retries return this stored response
    without re-running the checkout.
    """
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order"])
