"""Módulo de configuración de la API de cuentas y recargas.

Proporciona lectura de variables de entorno (con soporte para un archivo .env
local) y la configuración del logging. La instancia de Settings se inyecta
explícitamente en la base de datos, la pasarela de pagos y los servicios.
"""

import os
import logging
from pathlib import Path
from functools import lru_cache
from dotenv import load_dotenv

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# parse_bool: Interpreta valores tipo "1", "true", "yes", "on" como verdadero.
def parse_bool(raw: str, default: bool = False) -> bool:
    if raw is None or raw.strip() == '':
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')

# get_settings: Devuelve (cacheado) la instancia única de Settings.
@lru_cache
def get_settings():
    return Settings()

class Settings:
    """Agrupa todos los parámetros de configuración usados en la aplicación.

    Se inicializa leyendo variables de entorno. Los valores explícitos pasados
    como argumentos tienen prioridad, lo que permite construir configuraciones
    aisladas (por ejemplo en pruebas) sin tocar el entorno del proceso.
    """
    def __init__(self, **overrides):
        # Cargar .env local (aislado al directorio del módulo)
        base_dir = Path(__file__).resolve().parent
        load_dotenv(base_dir / '.env')

        default_db_path = base_dir / 'fmcarer.db'
        self.database_url = os.getenv('FMCARER_DB_URL', f"sqlite:///{default_db_path}")
        self.environment = os.getenv('APP_ENV', 'development').lower()
        self.log_level = os.getenv('LOG_LEVEL', 'INFO').upper()
        self.host = os.getenv('API_HOST', '127.0.0.1')
        self.port = int(os.getenv('API_PORT', '8000'))

        self.jwt_secret = os.getenv('JWT_SECRET', 'dev-secret-change')
        self.jwt_algorithm = os.getenv('JWT_ALG', 'HS256')
        self.jwt_exp_minutes = int(os.getenv('JWT_EXP_MIN', str(7 * 24 * 60)))

        # Pasarela Momo
        self.momo_mode = os.getenv('MOMO_MODE', 'mock').lower()  # mock | live
        self.momo_endpoint = os.getenv('MOMO_ENDPOINT', 'https://test-payment.momo.vn/v2/gateway/api/create')
        self.momo_partner_code = os.getenv('MOMO_PARTNER_CODE', 'MOMO_PARTNER_CODE')
        self.momo_access_key = os.getenv('MOMO_ACCESS_KEY', 'MOMO_ACCESS_KEY')
        self.momo_secret_key = os.getenv('MOMO_SECRET_KEY', 'MOMO_SECRET_KEY')
        self.momo_return_url = os.getenv('MOMO_RETURN_URL', 'http://localhost:3000/payment-status')
        self.momo_ipn_url = os.getenv('MOMO_IPN_URL', 'http://localhost:8000/payments/momo-ipn')
        self.momo_timeout = float(os.getenv('MOMO_TIMEOUT', '10'))
        self.momo_verify_signature = parse_bool(os.getenv('MOMO_VERIFY_SIGNATURE'), default=True)
        self.momo_mock_success_rate = float(os.getenv('MOMO_MOCK_SUCCESS_RATE', '0.95'))
        self.currency = os.getenv('TOPUP_CURRENCY', 'VND')

        self.upload_dir = Path(os.getenv('UPLOAD_DIR', str(base_dir / 'uploads')))
        self.subuser_limit = int(os.getenv('SUBUSER_LIMIT', '10'))

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)

    @property
    def is_production(self) -> bool:
        return self.environment == 'production'

# configure_logging: Configura el logging raíz una sola vez con el nivel indicado.
def configure_logging(settings: Settings):
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    else:
        root.setLevel(settings.log_level)
