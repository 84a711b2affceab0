"""Adaptador de la pasarela de pagos Momo.

Incluye la firma HMAC-SHA256 de las peticiones, la verificación de la firma de
las notificaciones (IPN), un cliente HTTP real y un doble simulado que
reproduce el comportamiento del entorno de pruebas (éxito aleatorio, URLs
ficticias). El procesador de liquidación solo depende de la interfaz
PaymentGateway, por lo que cualquier implementación puede sustituirse.
"""

import hashlib
import hmac
import logging
import random
import uuid
from decimal import Decimal
from typing import Optional
import requests
from config import Settings
from errors import GatewayError

logger = logging.getLogger(__name__)

MOMO_METHOD = 'Momo'
RESULT_SUCCESS = 0
RESULT_MOCK_FAILURE = 1001

# Orden fijo de campos en la firma de creación de pago.
INITIATE_SIGNATURE_FIELDS = (
    'accessKey', 'amount', 'extraData', 'ipnUrl', 'orderId',
    'orderInfo', 'partnerCode', 'redirectUrl', 'requestId',
)
# Orden fijo de campos en la firma de la notificación IPN.
CALLBACK_SIGNATURE_FIELDS = (
    'accessKey', 'amount', 'message', 'orderId', 'requestId', 'resultCode', 'transId',
)

# format_amount: Momo trabaja con importes enteros; se elimina la parte decimal nula.
def format_amount(amount) -> str:
    if isinstance(amount, Decimal):
        return str(int(amount)) if amount == amount.to_integral_value() else str(amount)
    if isinstance(amount, float) and amount.is_integer():
        return str(int(amount))
    return str(amount)

# raw_signature: Concatena key=value&... en el orden indicado.
def raw_signature(fields, values: dict) -> str:
    return '&'.join(f"{name}={'' if values.get(name) is None else values.get(name)}" for name in fields)

# sign: Firma HMAC-SHA256 en hexadecimal con el secreto compartido.
def sign(raw: str, secret: str) -> str:
    return hmac.new(secret.encode('utf-8'), raw.encode('utf-8'), hashlib.sha256).hexdigest()


class GatewayResponse:
    """Resultado de la llamada de inicio de pago.

    ok indica si la pasarela aceptó la orden; en ese caso pay_url y
    correlation_id (requestId de Momo) están presentes. En caso contrario
    message explica el rechazo.
    """
    def __init__(self, result_code: int, message: str, pay_url: Optional[str] = None,
                 correlation_id: Optional[str] = None, raw: Optional[dict] = None):
        self.result_code = result_code
        self.message = message
        self.pay_url = pay_url
        self.correlation_id = correlation_id
        self.raw = raw or {}

    @property
    def ok(self) -> bool:
        return self.result_code == RESULT_SUCCESS and bool(self.pay_url)

    # to_dict: Serializa la respuesta para guardarla como auditoría del pago.
    def to_dict(self):
        return {
            'resultCode': self.result_code,
            'message': self.message,
            'payUrl': self.pay_url,
            'requestId': self.correlation_id,
            'raw': self.raw,
        }


class PaymentGateway:
    """Interfaz común de las pasarelas de pago."""
    method = MOMO_METHOD

    def __init__(self, settings: Settings):
        self.settings = settings

    def initiate(self, order_ref: str, amount, account_ref: str, order_info: str,
                 redirect_url: str, notify_url: str) -> GatewayResponse:
        raise NotImplementedError

    # build_request: Construye el cuerpo firmado de la petición de creación.
    def build_request(self, order_ref: str, amount, order_info: str,
                      redirect_url: str, notify_url: str, request_id: str) -> dict:
        values = {
            'accessKey': self.settings.momo_access_key,
            'amount': format_amount(amount),
            'extraData': '',
            'ipnUrl': notify_url,
            'orderId': order_ref,
            'orderInfo': order_info,
            'partnerCode': self.settings.momo_partner_code,
            'redirectUrl': redirect_url,
            'requestId': request_id,
        }
        signature = sign(raw_signature(INITIATE_SIGNATURE_FIELDS, values), self.settings.momo_secret_key)
        body = {k: v for k, v in values.items() if k != 'accessKey'}
        body.update({'requestType': 'captureWallet', 'lang': 'vi', 'signature': signature})
        return body

    # callback_signature: Calcula la firma esperada para una notificación IPN.
    def callback_signature(self, payload: dict) -> str:
        values = {name: payload.get(name) for name in CALLBACK_SIGNATURE_FIELDS}
        values['accessKey'] = self.settings.momo_access_key
        if values.get('amount') is not None:
            values['amount'] = format_amount(values['amount'])
        return sign(raw_signature(CALLBACK_SIGNATURE_FIELDS, values), self.settings.momo_secret_key)

    # verify_callback: Compara en tiempo constante la firma recibida con la esperada.
    def verify_callback(self, payload: dict) -> bool:
        received = payload.get('signature')
        if not received or not isinstance(received, str):
            return False
        return hmac.compare_digest(received, self.callback_signature(payload))


class MomoGateway(PaymentGateway):
    """Cliente HTTP real contra el endpoint de creación de pagos de Momo."""
    def initiate(self, order_ref, amount, account_ref, order_info, redirect_url, notify_url):
        request_id = str(uuid.uuid4())
        body = self.build_request(order_ref, amount, order_info, redirect_url, notify_url, request_id)
        try:
            resp = requests.post(self.settings.momo_endpoint, json=body, timeout=self.settings.momo_timeout)
            data = resp.json()
            result_code = int(data.get('resultCode', -1))
        except requests.ConnectionError as e:
            # Sin respuesta alguna: no se puede afirmar el estado final del pago.
            logger.error("MOMO_UNREACHABLE", extra={"order_ref": order_ref, "error": str(e)})
            raise GatewayError("Payment gateway is unreachable.", detail=str(e)) from e
        except requests.Timeout as e:
            logger.warning("MOMO_TIMEOUT", extra={"order_ref": order_ref})
            return GatewayResponse(-1, "Payment gateway timed out.", raw={'error': str(e)})
        except (requests.RequestException, ValueError, TypeError, AttributeError) as e:
            logger.warning("MOMO_BAD_RESPONSE", extra={"order_ref": order_ref, "error": str(e)})
            return GatewayResponse(-1, "Invalid response from payment gateway.", raw={'error': str(e)})

        return GatewayResponse(
            result_code,
            data.get('message') or ('Success' if result_code == RESULT_SUCCESS else 'Momo initiation failed.'),
            pay_url=data.get('payUrl'),
            correlation_id=data.get('requestId', request_id),
            raw=data,
        )


class MockMomoGateway(PaymentGateway):
    """Doble simulado de Momo.

    Firma la petición igual que el cliente real y acepta la orden con
    probabilidad success_rate devolviendo URLs ficticias; si no, responde con
    el código 1001.
    """
    def __init__(self, settings: Settings, rng: Optional[random.Random] = None,
                 success_rate: Optional[float] = None):
        super().__init__(settings)
        self.rng = rng or random.Random()
        self.success_rate = settings.momo_mock_success_rate if success_rate is None else success_rate

    def initiate(self, order_ref, amount, account_ref, order_info, redirect_url, notify_url):
        request_id = str(uuid.uuid4())
        body = self.build_request(order_ref, amount, order_info, redirect_url, notify_url, request_id)
        if self.rng.random() < self.success_rate:
            amount_str = body['amount']
            data = {
                'payUrl': (f"https://mock-momo.com/pay?orderId={order_ref}&amount={amount_str}"
                           f"&signature={body['signature']}&requestId={request_id}"),
                'deeplink': f"momo://?action=pay&data={order_ref}",
                'qrCodeUrl': f"https://mock-momo.com/qr/{order_ref}.png",
                'requestId': request_id,
                'orderId': order_ref,
                'message': 'Success',
                'resultCode': RESULT_SUCCESS,
            }
            return GatewayResponse(RESULT_SUCCESS, 'Success', pay_url=data['payUrl'],
                                   correlation_id=request_id, raw=data)
        data = {'resultCode': RESULT_MOCK_FAILURE, 'message': 'Momo processing failed, please try again.'}
        return GatewayResponse(RESULT_MOCK_FAILURE, data['message'], raw=data)

# build_gateway: Elige la implementación según MOMO_MODE (mock | live).
def build_gateway(settings: Settings) -> PaymentGateway:
    if settings.momo_mode == 'live':
        return MomoGateway(settings)
    if settings.momo_mode == 'mock':
        return MockMomoGateway(settings)
    raise ValueError(f"Unsupported MOMO_MODE: {settings.momo_mode}")
