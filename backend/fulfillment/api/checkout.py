"""
Checkout API: paid orders through PhonePe.

POST /checkout/orders creates an unactivated trial plus a PaymentOrder and
returns the provider redirect URL. The trial is activated later by the
webhook, the status poll below, or the periodic reconcile pass; all three
go through apply_payment_update and so activate at most once.
"""
import logging

from django.core.exceptions import ImproperlyConfigured
from django.db import transaction
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework import status

from fulfillment.api.trials import create_trial
from fulfillment.exceptions import PaymentGatewayError, WebhookValidationError
from fulfillment.models import PaymentOrder
from fulfillment.serializers import CheckoutCreateSerializer, PaymentOrderSerializer
from fulfillment.services.payment_gateway import get_payment_gateway
from fulfillment.services.reconciler import apply_payment_update, create_payment_order

logger = logging.getLogger(__name__)


class CheckoutCreateView(APIView):

    def post(self, request):
        serializer = CheckoutCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        with transaction.atomic():
            trial = create_trial(data)

        try:
            order = create_payment_order(trial, data["package_type"], data["redirect_url"])
        except ImproperlyConfigured as e:
            logger.error("Checkout unavailable: %s", e)
            return Response({"detail": "Payments are not configured"}, status=status.HTTP_503_SERVICE_UNAVAILABLE)
        except PaymentGatewayError as e:
            logger.error("Checkout for trial %s failed: %s", trial.id, e)
            return Response(
                {"detail": "Payment provider error", "code": e.code},
                status=status.HTTP_502_BAD_GATEWAY,
            )

        return Response(
            {
                "trial_id": str(trial.id),
                "merchant_order_id": order.merchant_order_id,
                "amount": order.amount,
                "redirect_url": order.redirect_url,
            },
            status=status.HTTP_201_CREATED,
        )


class CheckoutStatusView(APIView):
    """
    Polled by the payment-return page. A PENDING order is checked with the
    provider and any settled state applied, so activation does not depend
    on the webhook alone.
    """

    def get(self, request, merchant_order_id):
        order = PaymentOrder.objects.filter(merchant_order_id=merchant_order_id).first()
        if order is None:
            return Response({"detail": f"Order {merchant_order_id} not found"}, status=status.HTTP_404_NOT_FOUND)

        if not order.is_terminal:
            try:
                result = get_payment_gateway().check_status(merchant_order_id)
                apply_payment_update(
                    merchant_order_id, result.state, result.transaction_id, result.amount, source="poll",
                )
            except ImproperlyConfigured as e:
                logger.error("Status poll unavailable: %s", e)
            except (PaymentGatewayError, WebhookValidationError) as e:
                logger.warning("Status poll for %s failed: %s", merchant_order_id, e)
            order.refresh_from_db()

        return Response(PaymentOrderSerializer(order).data)
