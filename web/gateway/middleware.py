"""Gateway middleware: request identifier, acting user and payload limits.

Every incoming HTTP request receives a request identifier (UUID). The
identifier is read from the incoming ``X-Request-Id`` header when provided by
the client, or generated server-side otherwise. The middleware stores the id
on the ``request`` object and in a context variable so code running
downstream (log filters, HTTP adapters) can access it without passing the
value explicitly.

Authentication is terminated upstream of this service. The edge forwards the
caller as ``X-User-Id`` / ``X-User-Role`` headers and ``ActorMiddleware``
turns them into an ``Actor`` on ``request.actor``.

Behavior contract:
- If the incoming request contains the ``X-Request-Id`` header, that value
  is reused as the request id.
- Otherwise a new UUIDv4 is generated.
- The response will include the same id in the ``X-Request-ID`` header.
- A request without ``X-User-Id`` runs as an anonymous actor; views reject
  it with 401 where an identity is required.
- An unknown ``X-User-Role`` is answered with 400 ``INVALID_ROLE``.
"""

import uuid
import os
import contextvars
from django.http import JsonResponse

from django.utils.deprecation import MiddlewareMixin

from apps.orders.domain import Actor, Role

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
USER_ID_CTX = contextvars.ContextVar("user_id", default="-")
MAX_API_BYTES = int(os.getenv("API_MAX_BYTES", str(1 * 1024 * 1024)))

class RequestIdMiddleware(MiddlewareMixin):
    """Django middleware that sets and returns a per-request identifier.

    Attributes:
        HEADER (str): The name of the incoming HTTP header (in Django's
            ``request.META`` casing) that may contain a client-provided id.
        RESPONSE_HEADER (str): The name of the header returned on responses.
    """

    HEADER = "HTTP_X_REQUEST_ID"       # incoming header as found in request.META
    RESPONSE_HEADER = "X-Request-ID"   # header to add to outgoing responses

    def process_request(self, request):
        """Populate the request with a request id and set a context var.

        The id is stored on ``request.request_id`` for easy access in views
        and also stored in ``REQUEST_ID_CTX`` for code that runs outside the
        request object (the HTTP adapters forward it to the ledgers).
        """
        rid = request.META.get(self.HEADER)
        if not rid:
            rid = str(uuid.uuid4())
        request.request_id = rid
        REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        """Ensure the response contains the request id header and return it.

        The method prefers the id attached to the request object but falls
        back to the ContextVar value when the request object is not present
        (for example in some error handlers).
        """
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        return response


class ActorMiddleware(MiddlewareMixin):
    """Resolve the acting user from trusted gateway headers."""

    USER_HEADER = "HTTP_X_USER_ID"
    ROLE_HEADER = "HTTP_X_USER_ROLE"

    def process_request(self, request):
        user_id = (request.META.get(self.USER_HEADER) or "").strip() or None
        raw_role = (request.META.get(self.ROLE_HEADER) or Role.CUSTOMER.value).strip().lower()
        try:
            role = Role(raw_role)
        except ValueError:
            return JsonResponse({"detail": "INVALID_ROLE", "role": raw_role}, status=400)
        request.actor = Actor(user_id=user_id, role=role)
        USER_ID_CTX.set(user_id or "-")


class ApiSizeLimitMiddleware(MiddlewareMixin):
    def process_request(self, request):
        if request.path.startswith("/api/"):
            clen = request.META.get("CONTENT_LENGTH")
            if clen and clen.isdigit() and int(clen) > MAX_API_BYTES:
                return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)
