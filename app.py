"""Aplicación FastAPI principal: cuentas, subusers, recargas Momo y moderación.

create_app recibe Settings, Database y pasarela de forma explícita; el objeto
`app` del módulo se construye con la configuración del entorno. La cuenta
administradora no se crea al arrancar: ver seed.py.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional
import uvicorn
from fastapi import FastAPI, Body, Depends, File, HTTPException, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from starlette.exceptions import HTTPException as StarletteHTTPException
from pydantic import BaseModel
from accounts import AccountService
from config import Settings, configure_logging, get_settings
from database import Database
from errors import AppError, GatewayError
from gateway import PaymentGateway, build_gateway
from models import Account, PaymentStatus, PaymentView, Role, account_view
from payments import PaymentService
from security import verify_bearer
from subusers import SubuserService
from uploads import store_avatar

logger = logging.getLogger(__name__)
bearer = HTTPBearer(auto_error=False)

# ---------------------------- Schemas ----------------------------
class RegisterPayload(BaseModel):
    """Payload para registro de cuentas principales."""
    email: str
    password: str
    fullname: str = ''

class LoginPayload(BaseModel):
    """Payload para inicio de sesión por email (principal o admin)."""
    email: str
    password: str

class SubuserLoginPayload(BaseModel):
    """Payload para inicio de sesión de subusers por teléfono."""
    numberphone: str
    password: str

class ProfilePayload(BaseModel):
    fullname: Optional[str] = None
    numberphone: Optional[str] = None
    image: Optional[str] = None

class SubuserPayload(BaseModel):
    """Payload para crear o actualizar un subuser de la cuenta autenticada."""
    numberphone: str
    password: str
    fullname: Optional[str] = None
    image: Optional[str] = None
    relationship: Optional[str] = None

class TopUpPayload(BaseModel):
    """Payload para iniciar una recarga; la validación de negocio la hace PaymentService."""
    amount: Optional[Decimal] = None
    payment_method: Optional[str] = None

# ------------------------- Serialización -------------------------

def ok(message: str, **data):
    return {"success": True, "message": message, **data}

def dump_account(account: Account):
    return account_view(account).model_dump(mode='json')

def dump_payment(payment):
    return PaymentView.model_validate(payment).model_dump(mode='json')

def error_body(settings: Settings, message: str, detail: Any = None):
    body = {"success": False, "message": message}
    if detail is not None and not settings.is_production:
        body["error"] = detail
    return body

# ----------------------- Dependencias -----------------------

def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings

def get_account_service(request: Request) -> AccountService:
    return AccountService(request.app.state.db, request.app.state.settings)

def get_subuser_service(request: Request) -> SubuserService:
    return SubuserService(request.app.state.db, request.app.state.settings)

def get_payment_service(request: Request) -> PaymentService:
    st = request.app.state
    return PaymentService(st.db, st.gateway, st.settings)


def get_current_account(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
                        settings: Settings = Depends(get_settings_dep),
                        accounts: AccountService = Depends(get_account_service)) -> Account:
    """Obtiene la cuenta autenticada a partir del token JWT o lanza 401/403."""
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED,
                            detail="Missing or malformed token (Bearer required).")
    claims = verify_bearer(settings, credentials.credentials)
    if not claims:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token.")
    try:
        account = accounts.get_account(claims['account_id'])
    except AppError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Account not found.")
    if account.role.value != claims['role']:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token.")
    if account.is_suspended:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is suspended.")
    return account


def require_role(*roles: Role):
    """Genera dependencia que valida que la cuenta tenga alguno de los roles requeridos."""
    def checker(account: Account = Depends(get_current_account)):
        if account.role not in roles:
            raise HTTPException(status_code=403, detail="Forbidden: insufficient role")
        return account
    return checker

# --------------------------- Aplicación ---------------------------

def create_app(settings: Optional[Settings] = None, db: Optional[Database] = None,
               gateway: Optional[PaymentGateway] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)
    db = db or Database(settings)
    gateway = gateway or build_gateway(settings)

    app = FastAPI(title="FMCarer Accounts & Top-up API", version="1.0.0")
    app.state.settings = settings
    app.state.db = db
    app.state.gateway = gateway

    @app.on_event("startup")
    def on_startup():
        """Crea las tablas si faltan."""
        db.init_db()

    # ------------------------ Manejo de errores ------------------------
    @app.exception_handler(AppError)
    def handle_app_error(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("REQUEST_FAILED", extra={"path": request.url.path, "error": exc.message})
        return JSONResponse(status_code=exc.status_code, content=error_body(settings, exc.message, exc.detail))

    @app.exception_handler(StarletteHTTPException)
    def handle_http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content=error_body(settings, str(exc.detail)),
                            headers=getattr(exc, 'headers', None))

    @app.exception_handler(RequestValidationError)
    def handle_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content=error_body(settings, "Invalid request payload.",
                                                                 jsonable_errors(exc)))

    @app.exception_handler(Exception)
    def handle_unexpected(request: Request, exc: Exception):
        logger.exception("UNHANDLED_ERROR", extra={"path": request.url.path})
        return JSONResponse(status_code=500, content=error_body(settings, "Internal server error.", str(exc)))

    # -------------------------- Utility ------------------------------
    @app.get('/health')
    def health():
        """Verificación básica de salud y modo de la pasarela."""
        return ok("ok", gateway_mode=settings.momo_mode)

    # --------------------------- Auth Routes -------------------------
    @app.post('/auth/register', status_code=201)
    def register(payload: RegisterPayload, accounts: AccountService = Depends(get_account_service)):
        """Registra una cuenta principal (parent)."""
        account = accounts.register_primary(payload.email, payload.password, payload.fullname)
        return ok("Registration successful.", user=dump_account(account))

    @app.post('/auth/login')
    def login(payload: LoginPayload, accounts: AccountService = Depends(get_account_service)):
        """Autentica una cuenta principal y devuelve token JWT."""
        token, account = accounts.authenticate_primary(payload.email, payload.password)
        return ok("Login successful!", token=token, token_type="bearer", user=dump_account(account))

    @app.post('/auth/login-subuser')
    def login_subuser(payload: SubuserLoginPayload, accounts: AccountService = Depends(get_account_service)):
        """Autentica un subuser por teléfono y devuelve token JWT."""
        token, account = accounts.authenticate_delegate(payload.numberphone, payload.password)
        return ok("Login successful!", token=token, token_type="bearer", user=dump_account(account))

    @app.post('/auth/admin/login')
    def admin_login(payload: LoginPayload, accounts: AccountService = Depends(get_account_service)):
        token, account = accounts.authenticate_admin(payload.email, payload.password)
        return ok("Login successful!", token=token, token_type="bearer", user=dump_account(account))

    # --------------------------- Perfil ------------------------------
    @app.get('/users/me')
    def me(account: Account = Depends(get_current_account)):
        return ok("Profile loaded.", user=dump_account(account))

    @app.patch('/users/me')
    def update_me(payload: ProfilePayload, account: Account = Depends(get_current_account),
                  accounts: AccountService = Depends(get_account_service)):
        updated = accounts.update_profile(account.id, payload.fullname, payload.numberphone, payload.image)
        return ok("Profile updated.", user=dump_account(updated))

    @app.post('/users/me/avatar')
    def upload_avatar(file: UploadFile = File(...), account: Account = Depends(get_current_account),
                      accounts: AccountService = Depends(get_account_service)):
        """Guarda el avatar y persiste la ruta devuelta en la cuenta."""
        path = store_avatar(file, settings)
        updated = accounts.set_avatar(account.id, path)
        return ok("Avatar uploaded.", image=path, user=dump_account(updated))

    # --------------------------- Subusers ----------------------------
    @app.post('/subusers')
    def create_or_update_subuser(payload: SubuserPayload,
                                 owner: Account = Depends(require_role(Role.primary)),
                                 subusers: SubuserService = Depends(get_subuser_service)):
        """Crea o actualiza (por teléfono) un subuser de la cuenta autenticada."""
        delegate, created = subusers.create_delegate(owner.id, payload.numberphone, payload.password,
                                                     payload.fullname, payload.image, payload.relationship)
        message = "Subuser created." if created else "Subuser updated."
        return JSONResponse(status_code=201 if created else 200,
                            content=ok(message, user=dump_account(delegate)))

    @app.get('/subusers')
    def list_subusers(owner: Account = Depends(require_role(Role.primary)),
                      subusers: SubuserService = Depends(get_subuser_service)):
        rows = subusers.list_delegates(owner.id)
        return ok("Subusers loaded.", data=[dump_account(r) for r in rows])

    @app.get('/subusers/{subuser_id}')
    def get_subuser(subuser_id: str, owner: Account = Depends(require_role(Role.primary)),
                    subusers: SubuserService = Depends(get_subuser_service)):
        return ok("Subuser loaded.", user=dump_account(subusers.get_delegate(subuser_id, owner.id)))

    @app.delete('/subusers/{subuser_id}')
    def delete_subuser(subuser_id: str, owner: Account = Depends(require_role(Role.primary)),
                       subusers: SubuserService = Depends(get_subuser_service)):
        subusers.delete_delegate(subuser_id, owner.id)
        return ok("Subuser deleted.")

    # ----------------------- Payment Endpoints -----------------------
    @app.post('/payments/topup/initiate')
    def initiate_topup(payload: TopUpPayload, account: Account = Depends(require_role(Role.primary)),
                       payments: PaymentService = Depends(get_payment_service)):
        """Inicia una recarga Momo y devuelve la URL de pago."""
        payment, pay_url = payments.initiate_top_up(account.id, payload.amount, payload.payment_method)
        if payment.status == PaymentStatus.Failed:
            return JSONResponse(status_code=GatewayError.status_code, content={
                "success": False,
                "message": "Momo payment initiation failed.",
                "error": payment.failed_reason,
                "payment": dump_payment(payment),
            })
        return ok("Momo payment initiated successfully.", payment=dump_payment(payment), payUrl=pay_url)

    @app.post('/payments/momo-ipn')
    def momo_ipn(payload: Dict[str, Any] = Body(...), payments: PaymentService = Depends(get_payment_service)):
        """Recibe la notificación IPN de Momo (llamada servidor a servidor)."""
        ack = payments.handle_ipn(payload)
        body = ack.to_dict()
        return ok(body.pop('message'), **body)

    @app.get('/payments/topup/history')
    def topup_history(limit: int = 10, skip: int = 0, account: Account = Depends(require_role(Role.primary)),
                      payments: PaymentService = Depends(get_payment_service)):
        rows, total = payments.get_top_up_history(account.id, limit, skip)
        return ok("Top-up history loaded.", total=total, limit=limit, skip=skip,
                  data=[dump_payment(r) for r in rows])

    @app.get('/payments/topup/{payment_id}')
    def get_topup(payment_id: str, account: Account = Depends(require_role(Role.primary)),
                  payments: PaymentService = Depends(get_payment_service)):
        return ok("Payment loaded.", payment=dump_payment(payments.get_payment_by_id(account.id, payment_id)))

    # ----------------------------- Admin -----------------------------
    @app.get('/admin/users')
    def admin_users(role: Optional[Role] = None, admin: Account = Depends(require_role(Role.admin)),
                    accounts: AccountService = Depends(get_account_service)):
        return ok("Users loaded.", users=[dump_account(a) for a in accounts.list_accounts(role)])

    @app.post('/admin/users/{account_id}/toggle-suspend')
    def toggle_suspend(account_id: str, admin: Account = Depends(require_role(Role.admin)),
                       accounts: AccountService = Depends(get_account_service)):
        account = accounts.toggle_suspension(account_id, admin.id)
        action = "suspended" if account.is_suspended else "unsuspended"
        return ok(f"User {action} successfully!", isSuspended=account.is_suspended)

    @app.get('/admin/logs')
    def admin_logs(limit: int = 50, admin: Account = Depends(require_role(Role.admin)),
                   accounts: AccountService = Depends(get_account_service)):
        logs = accounts.list_admin_logs(limit)
        return ok("Admin logs loaded.", logs=[
            {"id": entry.id, "admin_id": entry.admin_id, "action": entry.action,
             "created_at": entry.created_at.isoformat()}
            for entry in logs
        ])

    return app


def jsonable_errors(exc: RequestValidationError):
    return [{"loc": list(e.get('loc', ())), "msg": e.get('msg')} for e in exc.errors()]


app = create_app()


# main: Sirve la aplicación con uvicorn usando host y puerto de la configuración.
def main():
    settings = get_settings()
    uvicorn.run("app:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == '__main__':
    main()
