"""HTTP views for the storefront app.

This module contains the DRF API views called by the storefront client.
Views are kept intentionally small: they validate requests (via Pydantic),
map to domain DTOs, delegate to the cart store, the catalog accessor, the
checkout orchestrator or the webhook receiver, and return an HTTP response.

Collaborators come from ``providers``, which returns HTTP adapter-backed
ports or in-process stubs depending on runtime settings.

Error bodies are always ``{"detail": "<CODE>"}``. Payment provider
failures are reported as the generic ``PAYMENT_START_FAILED``; what the
provider actually said only goes to the logs.
"""
import logging

from django.http import HttpResponse
from pydantic import ValidationError as PydanticValidationError
from rest_framework import status
from rest_framework.parsers import FormParser
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .domain import (
    CartItemInput,
    CatalogError,
    CheckoutFailedError,
    ConfigurationError,
    GatewayError,
    LineItem,
    PersistenceWriteError,
    ValidationError,
)
from .idempotency import PENDING, IdempotencyConflict, claim_key, store_response
from .schemas import (
    AddToCartDTO,
    CheckoutDTO,
    CreatePaymentDTO,
    UpdateQuantityDTO,
    WebhookDTO,
)

logger = logging.getLogger("storefront.api")


def _error(code: str, status_code: int) -> Response:
    return Response({"detail": code}, status=status_code)


def _product_body(p) -> dict:
    return {
        "title": p.title,
        "slug": p.slug,
        "price": f"{p.price:.2f}",
        "priceCents": p.price_cents,
        "image": p.image_ref,
        "category": p.category or "",
    }


class _CartResponder:
    """Collects the badge count pushed by the cart store's observer and
    renders the cart with an ``X-Cart-Count`` header."""

    def __init__(self, store):
        self.store = store
        self.count = None
        store.subscribe(self._on_change)

    def _on_change(self, count: int) -> None:
        self.count = count

    def mutate(self, op, *args):
        try:
            op(*args)
        except PersistenceWriteError:
            # The change stands in memory; only saving it failed
            logger.error("cart not persisted", exc_info=True)

    def response(self, status_code: int = status.HTTP_200_OK) -> Response:
        cart = self.store.get()
        body = cart.to_dict()
        body["totalCount"] = cart.total_count
        body["totalCents"] = cart.total_cents
        resp = Response(body, status=status_code)
        resp["X-Cart-Count"] = str(self.count if self.count is not None else cart.total_count)
        return resp


class StorefrontPingView(APIView):
    """Simple health-check endpoint for the storefront module."""

    def get(self, request):
        return Response({"ok": True})


class ProductCollectionView(APIView):
    """List the catalog, filtered by ``q`` (title substring) and ``category``."""

    def get(self, request):
        try:
            products = providers.get_catalog().filter(
                request.GET.get("q", ""), request.GET.get("category", "")
            )
        except CatalogError:
            return _error("CATALOG_UNAVAILABLE", status.HTTP_503_SERVICE_UNAVAILABLE)
        return Response({"count": len(products), "results": [_product_body(p) for p in products]})


class ProductCategoriesView(APIView):
    def get(self, request):
        try:
            categories = providers.get_catalog().categories()
        except CatalogError:
            return _error("CATALOG_UNAVAILABLE", status.HTTP_503_SERVICE_UNAVAILABLE)
        return Response({"results": categories})


class ProductDetailView(APIView):
    def get(self, request, slug: str):
        try:
            product = providers.get_catalog().find_by_slug(slug)
        except CatalogError:
            return _error("CATALOG_UNAVAILABLE", status.HTTP_503_SERVICE_UNAVAILABLE)
        if product is None:
            return _error("NOT_FOUND", status.HTTP_404_NOT_FOUND)
        return Response(_product_body(product))


class CartView(APIView):
    """Read or clear the session cart."""

    def get(self, request):
        return _CartResponder(providers.get_cart_store(request)).response()

    def delete(self, request):
        cart = _CartResponder(providers.get_cart_store(request))
        cart.mutate(cart.store.clear)
        return cart.response()


class CartItemsView(APIView):
    """Add one unit of a catalog product to the session cart.

    The line is built from the catalog record, so the stored unit price is
    the catalog price at the time of adding.
    """

    def post(self, request):
        try:
            dto = AddToCartDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)

        try:
            product = providers.get_catalog().find_by_slug(dto.slug)
        except CatalogError:
            return _error("CATALOG_UNAVAILABLE", status.HTTP_503_SERVICE_UNAVAILABLE)
        if product is None:
            return _error("NOT_FOUND", status.HTTP_404_NOT_FOUND)

        cart = _CartResponder(providers.get_cart_store(request))
        cart.mutate(cart.store.add, CartItemInput.from_product(product))
        return cart.response(status.HTTP_201_CREATED)


class CartItemView(APIView):
    """Change the quantity of, or remove, the cart line at ``index``."""

    def patch(self, request, index: int):
        try:
            dto = UpdateQuantityDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        return self._apply(request, index, dto.delta)

    def delete(self, request, index: int):
        return self._apply(request, index, "remove")

    def _apply(self, request, index, delta):
        cart = _CartResponder(providers.get_cart_store(request))
        try:
            cart.mutate(cart.store.set_quantity, index, delta)
        except ValidationError as e:
            return _error(str(e), status.HTTP_400_BAD_REQUEST)
        return cart.response()


class CheckoutView(APIView):
    """Start a payment for the session cart.

    On success the cart is already cleared when the response leaves, and
    the client is expected to navigate to ``checkoutUrl``.
    """
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments_create"

    def post(self, request):
        try:
            dto = CheckoutDTO.model_validate(request.data or {})
        except PydanticValidationError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)

        cart = _CartResponder(providers.get_cart_store(request))
        orchestrator = providers.get_checkout_orchestrator(cart.store)
        try:
            session = orchestrator.checkout(dto.customer)
        except ValidationError as e:
            return _error(str(e), status.HTTP_400_BAD_REQUEST)
        except ConfigurationError:
            logger.critical("payment provider not configured")
            return _error("PAYMENT_NOT_CONFIGURED", status.HTTP_500_INTERNAL_SERVER_ERROR)
        except CheckoutFailedError:
            return _error("PAYMENT_START_FAILED", status.HTTP_502_BAD_GATEWAY)

        resp = Response({"checkoutUrl": session.checkout_url}, status=status.HTTP_200_OK)
        resp["X-Cart-Count"] = str(cart.count if cart.count is not None else 0)
        return resp


class CreatePaymentView(APIView):
    """Create a provider payment from a client-declared cart.

    This is the stateless endpoint of the storefront client: the body
    carries the lines, the response carries the checkout URL. The charged
    amount is recomputed from the lines by the gateway adapter. An optional
    ``Idempotency-Key`` header makes client retries safe: same key and
    payload replay the stored response, same key with another payload is a
    409.
    """
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments_create"

    def post(self, request):
        """Create a payment.

        Returns:
            Response: One of the following responses.
            - 200 with {checkoutUrl} when the provider accepted the payment.
            - 400 with {detail} for schema errors, ``EMPTY_CART`` or
              ``INVALID_TOTAL``.
            - 409 with {detail: "IDEMPOTENCY_CONFLICT"} when the key is
              reused with a different payload.
            - 500 with {detail: "PAYMENT_NOT_CONFIGURED"} without API key.
            - 502 with {detail: "PAYMENT_START_FAILED"} on provider failure.
        """
        idem_key = request.headers.get("Idempotency-Key")

        # 1) Pydantic validation
        try:
            dto = CreatePaymentDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        if not dto.items:
            return _error("EMPTY_CART", status.HTTP_400_BAD_REQUEST)

        # 2) Claim the idempotency key, or replay the earlier answer
        rec = None
        if idem_key:
            try:
                rec, replay = claim_key(idem_key, dto)
            except IdempotencyConflict:
                return _error("IDEMPOTENCY_CONFLICT", status.HTTP_409_CONFLICT)
            if replay:
                if rec.response_status == PENDING:
                    return _error("IDEMPOTENCY_IN_PROGRESS", status.HTTP_409_CONFLICT)
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        # 3) Domain
        line_items = [
            LineItem(
                title=i.title,
                unit_price_cents=i.price_cents,
                quantity=i.qty,
                slug=i.slug,
                category=i.category,
                image=i.image,
            )
            for i in dto.items
        ]
        payment_id = None
        try:
            session = providers.get_payment_gateway().create_session(line_items, dto.customer)
        except ValidationError as e:
            status_code, body = status.HTTP_400_BAD_REQUEST, {"detail": str(e)}
        except ConfigurationError:
            logger.critical("payment provider not configured")
            status_code, body = status.HTTP_500_INTERNAL_SERVER_ERROR, {"detail": "PAYMENT_NOT_CONFIGURED"}
        except GatewayError as e:
            logger.error(
                "payment creation failed",
                extra={"code": e.code, "provider_status": e.status_code, "provider_detail": e.detail},
            )
            status_code, body = status.HTTP_502_BAD_GATEWAY, {"detail": "PAYMENT_START_FAILED"}
        else:
            payment_id = session.provider_payment_id
            status_code, body = status.HTTP_200_OK, {"checkoutUrl": session.checkout_url}
            logger.info(
                "payment created",
                extra={"payment_id": payment_id, "amount_cents": session.amount_cents},
            )

        # 4) Response
        if rec:
            store_response(rec, status_code, body, payment_id=payment_id)
        return Response(body, status=status_code)


class PaymentWebhookView(APIView):
    """Provider callback: ``POST id=<paymentId>`` (form-encoded).

    The provider retries until it gets a 2xx, so the answer is 200 as soon
    as the payment status is known, whatever happens to order storage
    afterwards. A failed status lookup answers 502 so the provider retries.
    """
    parser_classes = [FormParser]

    def post(self, request):
        try:
            dto = WebhookDTO.model_validate({"id": request.data.get("id", "")})
        except PydanticValidationError:
            return _error("INVALID_PAYMENT_ID", status.HTTP_400_BAD_REQUEST)

        try:
            providers.get_webhook_receiver().handle(dto.id)
        except ConfigurationError:
            logger.critical("payment provider not configured")
            return _error("PAYMENT_NOT_CONFIGURED", status.HTTP_500_INTERNAL_SERVER_ERROR)
        except GatewayError as e:
            logger.error(
                "payment status lookup failed",
                extra={"payment_id": dto.id, "code": e.code, "provider_status": e.status_code, "provider_detail": e.detail},
            )
            return _error("STATUS_LOOKUP_FAILED", status.HTTP_502_BAD_GATEWAY)

        return HttpResponse("ok", content_type="text/plain")
