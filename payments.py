"""Libro de recargas y procesador de liquidación.

Flujo: initiate_top_up crea el pago Pending y pide a la pasarela la URL de
pago dentro de la misma transacción; más tarde la pasarela notifica (IPN) y
handle_gateway_callback aplica el resultado una sola vez, acreditando el saldo
de la cuenta en la misma transacción que marca el pago como Completed.
"""

import logging
import uuid
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple
from sqlalchemy import func, update
from sqlmodel import select
from config import Settings
from database import Database
from errors import (InternalError, NotFound, PaymentNotFound, Unauthorized,
                    UnsupportedMethod, ValidationError)
from gateway import MOMO_METHOD, RESULT_SUCCESS, PaymentGateway, format_amount
from models import Account, Payment, PaymentStatus, TERMINAL_STATUSES, utcnow

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

# parse_amount: Convierte el importe a Decimal y exige que sea positivo y finito.
def parse_amount(raw) -> Decimal:
    if raw is None or isinstance(raw, bool):
        raise ValidationError("Missing required field: amount.")
    try:
        amount = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        raise ValidationError("Amount must be a number.")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be positive.")
    return amount


class SettlementAck:
    """Acuse de una notificación de la pasarela.

    applied es False cuando la notificación no cambió nada (duplicada o
    contradictoria con un estado final ya registrado).
    """
    def __init__(self, applied: bool, status: PaymentStatus, message: str, anomalous: bool = False):
        self.applied = applied
        self.status = status
        self.message = message
        self.anomalous = anomalous

    def to_dict(self):
        return {
            'applied': self.applied,
            'status': PaymentStatus(self.status).value,
            'message': self.message,
            'anomalous': self.anomalous,
        }


class PaymentService:
    """Operaciones de recarga sobre el libro de pagos."""
    def __init__(self, db: Database, gateway: PaymentGateway, settings: Settings):
        self.db = db
        self.gateway = gateway
        self.settings = settings

    # ----------------------------- Inicio -----------------------------
    def initiate_top_up(self, account_id: str, amount, method: str) -> Tuple[Payment, Optional[str]]:
        """Crea el pago Pending y llama a la pasarela en una única transacción.

        Si la pasarela rechaza (o no responde a tiempo) el pago queda Failed.
        Si la pasarela es inalcanzable se lanza GatewayError y no queda fila.
        """
        amount = parse_amount(amount)
        if not method:
            raise ValidationError("Missing required field: payment_method.")
        if method != MOMO_METHOD:
            raise UnsupportedMethod()

        order_ref = f"PAY_{uuid.uuid4()}"
        with self.db.session() as s:
            account = s.get(Account, account_id)
            if not account:
                raise NotFound("Account not found.")
            order_info = f"Top up account {account.email or account.id} - {order_ref}"
            payment = Payment(
                order_ref=order_ref,
                account_id=account_id,
                amount=amount,
                currency=self.settings.currency,
                method=MOMO_METHOD,
                order_info=order_info,
                status=PaymentStatus.Pending,
            )
            s.add(payment)
            s.flush()
            logger.info("TOPUP_PENDING_CREATED", extra={"order_ref": order_ref, "account_id": account_id})

            response = self.gateway.initiate(
                order_ref, amount, account_id, order_info,
                self.settings.momo_return_url, self.settings.momo_ipn_url,
            )
            if response.ok:
                payment.gateway_ref = response.correlation_id
                payment.pay_url = response.pay_url
            else:
                payment.status = PaymentStatus.Failed
                payment.failed_reason = response.message or 'Momo initiation failed.'
                logger.warning("TOPUP_INITIATION_FAILED",
                               extra={"order_ref": order_ref, "result_code": response.result_code})
            payment.raw_gateway_response = {'initiation': response.to_dict()}
            s.add(payment)
            s.commit()
            s.refresh(payment)
            return payment, payment.pay_url

    # --------------------------- Liquidación ---------------------------
    def handle_ipn(self, payload: dict) -> SettlementAck:
        """Punto de entrada de la notificación IPN de Momo: verifica firma y liquida."""
        if self.settings.momo_verify_signature and not self.gateway.verify_callback(payload):
            logger.warning("MOMO_IPN_BAD_SIGNATURE", extra={"order_ref": payload.get('orderId')})
            raise Unauthorized("Invalid callback signature.")
        order_ref = payload.get('orderId')
        gateway_ref = payload.get('requestId')
        if not order_ref or not gateway_ref or payload.get('resultCode') is None:
            raise ValidationError("orderId, requestId and resultCode are required.")
        try:
            result_code = int(payload['resultCode'])
        except (TypeError, ValueError):
            raise ValidationError("resultCode must be an integer.")
        trans_id = payload.get('transId')
        return self.handle_gateway_callback(
            order_ref, gateway_ref, result_code, payload.get('message'),
            None if trans_id is None else str(trans_id), payload, amount=payload.get('amount'),
        )

    def handle_gateway_callback(self, order_ref: str, gateway_ref: str, result_code: int,
                                message: Optional[str], external_txn_id: Optional[str],
                                payload: Optional[dict] = None, amount=None) -> SettlementAck:
        """Aplica el resultado de la pasarela exactamente una vez.

        La transición se hace con un UPDATE condicionado a status = 'Pending':
        si dos notificaciones concurrentes leen Pending, solo una modifica la
        fila y solo esa acredita el saldo.
        """
        succeeded = result_code == RESULT_SUCCESS
        with self.db.session() as s:
            payment = s.exec(
                select(Payment).where(Payment.order_ref == order_ref, Payment.gateway_ref == gateway_ref)
            ).first()
            if not payment:
                logger.warning("MOMO_IPN_PAYMENT_NOT_FOUND", extra={"order_ref": order_ref})
                raise PaymentNotFound()

            if payment.status in TERMINAL_STATUSES:
                return self._already_settled(payment, succeeded)

            if succeeded and amount is not None and format_amount(amount) != format_amount(payment.amount):
                logger.warning("MOMO_IPN_AMOUNT_MISMATCH",
                               extra={"order_ref": order_ref, "expected": str(payment.amount), "received": str(amount)})
                raise ValidationError("Callback amount does not match the payment.")

            if succeeded:
                values = {
                    'status': PaymentStatus.Completed,
                    'completed_at': utcnow(),
                    'external_txn_id': external_txn_id,
                    'raw_gateway_response': self._audit(payment, payload),
                }
            else:
                values = {
                    'status': PaymentStatus.Failed,
                    'failed_reason': message or f"Momo failed with result code: {result_code}",
                    'raw_gateway_response': self._audit(payment, payload),
                }
            result = s.exec(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status == PaymentStatus.Pending)
                .values(**values)
            )
            if result.rowcount == 0:
                # Otra notificación ganó la carrera entre la lectura y la escritura.
                s.rollback()
                current = s.get(Payment, payment.id)
                s.refresh(current)
                return self._already_settled(current, succeeded)

            if succeeded:
                credited = s.exec(
                    update(Account)
                    .where(Account.id == payment.account_id)
                    .values(balance=Account.balance + payment.amount)
                )
                if credited.rowcount != 1:
                    raise InternalError("Account not found during settlement.")
            s.commit()

        status = values['status']
        logger.info("TOPUP_SETTLED", extra={"order_ref": order_ref, "status": status.value})
        return SettlementAck(True, status, 'Momo IPN processed successfully.')

    # _audit: Conserva la respuesta de inicio y añade la notificación recibida.
    @staticmethod
    def _audit(payment: Payment, payload: Optional[dict]) -> dict:
        audit = dict(payment.raw_gateway_response or {})
        audit['callback'] = payload or {}
        return audit

    @staticmethod
    def _already_settled(payment: Payment, succeeded: bool) -> SettlementAck:
        expected = PaymentStatus.Completed if succeeded else PaymentStatus.Failed
        if payment.status != expected:
            # Un estado final nunca se sobrescribe con el contrario.
            logger.warning("MOMO_IPN_CONFLICTING_OUTCOME",
                           extra={"order_ref": payment.order_ref, "status": payment.status.value,
                                  "callback_success": succeeded})
            return SettlementAck(False, payment.status, 'Payment already settled with a different outcome.',
                                 anomalous=True)
        logger.info("MOMO_IPN_DUPLICATE", extra={"order_ref": payment.order_ref})
        return SettlementAck(False, payment.status, 'Payment already processed.')

    # ---------------------------- Consultas ----------------------------
    def get_top_up_history(self, account_id: str, limit: int = 10, offset: int = 0) -> Tuple[List[Payment], int]:
        """Lista pagos de la cuenta, más recientes primero, con el total."""
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}.")
        if offset < 0:
            raise ValidationError("skip must be zero or positive.")
        with self.db.session() as s:
            statement = (
                select(Payment)
                .where(Payment.account_id == account_id, Payment.method == MOMO_METHOD)
                .order_by(Payment.created_at.desc(), Payment.id.desc())
                .offset(offset)
                .limit(limit)
            )
            rows = list(s.exec(statement).all())
            total = s.exec(
                select(func.count()).select_from(Payment).where(
                    Payment.account_id == account_id, Payment.method == MOMO_METHOD)
            ).one()
            return rows, total

    def get_payment_by_id(self, account_id: str, payment_id: str) -> Payment:
        with self.db.session() as s:
            payment = s.exec(
                select(Payment).where(Payment.id == payment_id, Payment.account_id == account_id)
            ).first()
            if not payment:
                raise NotFound("Payment not found or you do not have access to it.")
            return payment
