import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from checkout_service.application.cancel_order import CancelOrderUseCase
from checkout_service.application.checkout import CheckoutOrchestrator, CheckoutSummaryDTO, InitiateCheckoutDTO
from checkout_service.application.get_order import GetOrderUseCase
from checkout_service.application.inventory import InventoryReservationManager
from checkout_service.application.order_lifecycle import OrderLifecycle
from checkout_service.application.process_payment import PaymentGatewayOrchestrator
from checkout_service.application.update_order_status import UpdateOrderStatusDTO, UpdateOrderStatusUseCase
from checkout_service.config import settings
from checkout_service.database import AsyncSessionLocal
from checkout_service.domain.exceptions import (
    CartServiceError, CheckoutValidationError, ConcurrentOrderUpdateError, DomainException,
    IllegalTransitionError, InsufficientStockError, OrderAccessDeniedError, OrderNotFoundError,
    PaymentGatewayError, ReservationReleaseError, UnsupportedPaymentMethodError
)
from checkout_service.domain.models import PaymentMethod, PaymentResult, ShippingMethod
from checkout_service.domain.pricing import PricingCalculator
from checkout_service.infrastructure.http_clients import HTTPCartClient
from checkout_service.infrastructure.payment_providers import build_payment_providers
from checkout_service.infrastructure.unit_of_work import UnitOfWork
from checkout_service.presentation.schemas import (
    CancelOrderRequest, CheckoutResponse, CheckoutStatusResponse, CheckoutSummaryResponse, ErrorResponse,
    InitiateCheckoutRequest, OrderResponse, PaymentRequest, UpdateStatusRequest
)

logger = logging.getLogger(__name__)

router = APIRouter()

_providers = None


# Dependency factories
def get_unit_of_work():
    return UnitOfWork(AsyncSessionLocal)


def get_cart_service():
    return HTTPCartClient(settings.CART_BASE_URL, settings.API_TOKEN)


def get_payment_providers():
    global _providers
    if _providers is None:
        _providers = build_payment_providers(settings)
    return _providers


def get_pricing_calculator():
    return PricingCalculator(settings.pricing)


def get_lifecycle():
    return OrderLifecycle(InventoryReservationManager())


def get_payment_orchestrator(
    uow=Depends(get_unit_of_work),
    providers=Depends(get_payment_providers),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    return PaymentGatewayOrchestrator(uow, providers, lifecycle)


def get_checkout_orchestrator(
    uow=Depends(get_unit_of_work),
    cart=Depends(get_cart_service),
    pricing: PricingCalculator = Depends(get_pricing_calculator),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
    payments: PaymentGatewayOrchestrator = Depends(get_payment_orchestrator),
):
    return CheckoutOrchestrator(
        uow, cart, pricing, InventoryReservationManager(), lifecycle, payments,
        hold_minutes=settings.RESERVATION_HOLD_MINUTES,
        estimated_delivery_days=settings.ESTIMATED_DELIVERY_DAYS,
    )


def get_get_order_use_case(uow=Depends(get_unit_of_work)):
    return GetOrderUseCase(uow)


def get_cancel_order_use_case(uow=Depends(get_unit_of_work), lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    return CancelOrderUseCase(uow, lifecycle)


def get_update_status_use_case(uow=Depends(get_unit_of_work), lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    return UpdateOrderStatusUseCase(uow, lifecycle)


def get_current_user(x_user_id: str = Header(...)) -> str:
    return x_user_id


def require_api_key(x_api_key: str = Header(...)) -> str:
    if not settings.API_TOKEN or x_api_key != settings.API_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


def _to_http(e: Exception) -> HTTPException:
    if isinstance(e, InsufficientStockError):
        return HTTPException(status_code=409, detail={
            "message": str(e),
            "items": [
                {
                    "product_id": s.product_id,
                    "product_name": s.product_name,
                    "target": s.target,
                    "requested": s.requested,
                    "available": s.available,
                    "reason": s.reason,
                }
                for s in e.shortfalls
            ],
        })
    if isinstance(e, CheckoutValidationError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, OrderNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, OrderAccessDeniedError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, (IllegalTransitionError, ConcurrentOrderUpdateError)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, PaymentGatewayError):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, CartServiceError):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, ReservationReleaseError):
        return HTTPException(status_code=500, detail="Order could not be rolled back, support has been alerted")
    logger.exception(f"Unexpected error: {e}")
    return HTTPException(status_code=503, detail=f"Service unavailable: {str(e)}")


@router.post(
    "/checkout/initiate",
    response_model=CheckoutResponse,
    responses={400: {"model": ErrorResponse}, 409: {}, 503: {"model": ErrorResponse}},
    status_code=status.HTTP_201_CREATED
)
async def initiate_checkout(
    request: InitiateCheckoutRequest,
    user_id: str = Depends(get_current_user),
    orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator)
):
    """Create an order from the user's cart and reserve its stock"""
    try:
        result = await orchestrator.initiate(InitiateCheckoutDTO(user_id=user_id, **request.model_dump()))
    except Exception as e:
        raise _to_http(e)
    return CheckoutResponse(
        message="Checkout already initiated" if result.replayed else "Checkout initiated successfully",
        order=OrderResponse.from_domain(result.order),
        pricing=result.pricing,
        payment=result.payment,
    )


@router.get("/checkout/summary", response_model=CheckoutSummaryResponse)
async def checkout_summary(
    shipping_method: ShippingMethod = ShippingMethod.STANDARD,
    coupon_code: Optional[str] = None,
    county: Optional[str] = None,
    user_id: str = Depends(get_current_user),
    orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator)
):
    """Price the current cart without reserving anything"""
    try:
        quote = await orchestrator.get_summary(CheckoutSummaryDTO(
            user_id=user_id, shipping_method=shipping_method, coupon_code=coupon_code, county=county
        ))
    except Exception as e:
        raise _to_http(e)
    return CheckoutSummaryResponse(items=quote.items, pricing=quote.pricing)


# declared before /checkout/payment/{order_id} so "callback" is not taken for an order id
@router.post("/checkout/payment/callback")
async def mpesa_callback(
    request: Request,
    payments: PaymentGatewayOrchestrator = Depends(get_payment_orchestrator)
):
    """Daraja STK push result"""
    return await _handle_callback(PaymentMethod.MPESA, request, payments)


@router.post("/checkout/payment/callback/{provider}")
async def provider_callback(
    provider: str,
    request: Request,
    payments: PaymentGatewayOrchestrator = Depends(get_payment_orchestrator)
):
    try:
        method = PaymentMethod(provider)
        payments.provider_for(method)
    except (ValueError, UnsupportedPaymentMethodError):
        raise HTTPException(status_code=404, detail=f"Unknown payment provider: {provider}")
    return await _handle_callback(method, request, payments)


async def _handle_callback(method: PaymentMethod, request: Request, payments: PaymentGatewayOrchestrator) -> dict:
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body) if raw_body else {}
    except ValueError:
        logger.warning(f"{method.value} callback with a body that is not JSON")
        payload = {}
    return await payments.handle_callback(method, payload, raw_body, dict(request.headers))


@router.post("/checkout/payment/{order_id}", response_model=PaymentResult)
async def process_payment(
    order_id: str,
    request: PaymentRequest,
    user_id: str = Depends(get_current_user),
    payments: PaymentGatewayOrchestrator = Depends(get_payment_orchestrator)
):
    """Start (or complete) payment of a pending order"""
    try:
        result = await payments.pay(order_id, user_id, request.payment_data)
    except Exception as e:
        raise _to_http(e)
    return result


@router.get("/checkout/status/{order_id}", response_model=CheckoutStatusResponse)
async def checkout_status(
    order_id: str,
    user_id: str = Depends(get_current_user),
    payments: PaymentGatewayOrchestrator = Depends(get_payment_orchestrator)
):
    """Current payment state; asks the provider when it is still processing"""
    try:
        order = await payments.check_status(order_id, user_id)
    except Exception as e:
        raise _to_http(e)
    return CheckoutStatusResponse.from_domain(order)


@router.get(
    "/orders/{order_id}",
    response_model=OrderResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}}
)
async def get_order(
    order_id: str,
    user_id: str = Depends(get_current_user),
    use_case: GetOrderUseCase = Depends(get_get_order_use_case)
):
    try:
        order = await use_case(order_id, user_id)
    except DomainException as e:
        raise _to_http(e)
    return OrderResponse.from_domain(order)


@router.post("/orders/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: str,
    request: Optional[CancelOrderRequest] = None,
    user_id: str = Depends(get_current_user),
    use_case: CancelOrderUseCase = Depends(get_cancel_order_use_case)
):
    try:
        order = await use_case(order_id, user_id, request.reason if request else None)
    except Exception as e:
        raise _to_http(e)
    return OrderResponse.from_domain(order)


@router.patch("/orders/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: str,
    request: UpdateStatusRequest,
    _: str = Depends(require_api_key),
    use_case: UpdateOrderStatusUseCase = Depends(get_update_status_use_case)
):
    """Operator transitions: process, ship, deliver, return, cancel"""
    try:
        order = await use_case(UpdateOrderStatusDTO(order_id=order_id, actor="operator", **request.model_dump()))
    except Exception as e:
        raise _to_http(e)
    return OrderResponse.from_domain(order)
