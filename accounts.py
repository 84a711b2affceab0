"""Operaciones sobre el almacén de cuentas.

Registro de cuentas principales, autenticación por email (principal y admin)
o por teléfono (delegadas), perfil, avatar y moderación por administradores.

Política de suspensión: una cuenta suspendida no puede autenticarse, sea cual
sea su rol. Para delegadas solo se consulta su propia marca; la suspensión de
la cuenta principal dueña no se propaga a sus delegadas.
"""

import logging
import re
from typing import List, Optional, Tuple
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from config import Settings
from database import Database
from errors import (AccountSuspended, Conflict, Forbidden, InvalidCredentials,
                    NotFound, ValidationError)
from models import Account, AdminLog, Role
from security import create_token, hash_password, verify_password
from subusers import normalize_phone

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

# normalize_email: Minúsculas y sin espacios; rechaza formatos inválidos y el dominio reservado.
def normalize_email(raw: str) -> str:
    email = (raw or '').strip().lower()
    if not _EMAIL_RE.match(email) or len(email) > 100:
        raise ValidationError("A valid email address is required.")
    if email.endswith('.invalid'):
        raise ValidationError("Email domain is not allowed.")
    return email


class AccountService:
    """Servicio de cuentas: registro, login, perfil y moderación."""
    def __init__(self, db: Database, settings: Settings):
        self.db = db
        self.settings = settings

    # ----------------------------- Registro -----------------------------
    def register_primary(self, email: str, password: str, fullname: str = '') -> Account:
        if not password:
            raise ValidationError("Password is required.")
        email = normalize_email(email)
        with self.db.session() as s:
            if s.exec(select(Account).where(Account.email == email)).first():
                raise Conflict("Email already exists.")
            account = Account(
                role=Role.primary,
                email=email,
                password_hash=hash_password(password),
                fullname=fullname or '',
                is_verified=True,
            )
            s.add(account)
            try:
                s.commit()
            except IntegrityError as exc:
                raise Conflict("Email already exists.") from exc
            s.refresh(account)
            logger.info("ACCOUNT_REGISTERED", extra={"account_id": account.id})
            return account

    # --------------------------- Autenticación ---------------------------
    def _authenticate_by_email(self, email: str, password: str, role: Role) -> Tuple[str, Account]:
        if not email or not password:
            raise ValidationError("Email and password are required.")
        with self.db.session() as s:
            account = s.exec(
                select(Account).where(Account.email == email.strip().lower(), Account.role == role)
            ).first()
        if not account:
            raise InvalidCredentials("Invalid email or password.")
        # La suspensión se comprueba antes que la contraseña.
        if account.is_suspended:
            logger.info("LOGIN_REFUSED_SUSPENDED", extra={"account_id": account.id})
            raise AccountSuspended("Account is suspended. Please contact support.")
        if not verify_password(password, account.password_hash):
            raise InvalidCredentials("Invalid email or password.")
        return create_token(self.settings, account.id, account.role.value), account

    def authenticate_primary(self, email: str, password: str) -> Tuple[str, Account]:
        return self._authenticate_by_email(email, password, Role.primary)

    def authenticate_admin(self, email: str, password: str) -> Tuple[str, Account]:
        return self._authenticate_by_email(email, password, Role.admin)

    def authenticate_delegate(self, phone: str, password: str) -> Tuple[str, Account]:
        """Login por teléfono.

        El teléfono es único solo por cuenta principal, así que se prueban todas
        las delegadas con ese número. Mismo mensaje para teléfono desconocido y
        contraseña errónea.
        """
        if not phone or not password:
            raise ValidationError("Phone number and password are required.")
        normalized = normalize_phone(phone)
        with self.db.session() as s:
            candidates = s.exec(
                select(Account)
                .where(Account.role == Role.delegate, Account.numberphone == normalized)
                .order_by(Account.created_at)
            ).all()
        for account in candidates:
            if verify_password(password, account.password_hash):
                if account.is_suspended:
                    raise AccountSuspended("Account is suspended. Please contact support.")
                return create_token(self.settings, account.id, account.role.value), account
        raise InvalidCredentials("Invalid phone number or password.")

    # ------------------------------ Perfil ------------------------------
    def get_account(self, account_id: str) -> Account:
        with self.db.session() as s:
            account = s.get(Account, account_id)
            if not account:
                raise NotFound("Account not found.")
            return account

    def update_profile(self, account_id: str, fullname: Optional[str] = None,
                       numberphone: Optional[str] = None, image: Optional[str] = None) -> Account:
        with self.db.session() as s:
            account = s.get(Account, account_id)
            if not account:
                raise NotFound("Account not found.")
            if fullname is not None:
                account.fullname = fullname
            if image is not None:
                account.image = image
            if numberphone is not None:
                normalized = normalize_phone(numberphone)
                if account.role == Role.delegate and not normalized:
                    raise ValidationError("Subuser phone number cannot be empty.")
                account.numberphone = normalized or None
            s.add(account)
            try:
                s.commit()
            except IntegrityError as exc:
                raise Conflict("Phone number already in use.") from exc
            s.refresh(account)
            return account

    def set_avatar(self, account_id: str, image_path: str) -> Account:
        return self.update_profile(account_id, image=image_path)

    # ---------------------------- Moderación ----------------------------
    def list_accounts(self, role: Optional[Role] = None) -> List[Account]:
        with self.db.session() as s:
            statement = select(Account).order_by(Account.created_at.desc())
            if role is not None:
                statement = statement.where(Account.role == role)
            return list(s.exec(statement).all())

    def toggle_suspension(self, account_id: str, admin_id: Optional[str] = None) -> Account:
        """Invierte la marca de suspensión; los administradores no pueden suspenderse por aquí."""
        with self.db.session() as s:
            account = s.get(Account, account_id)
            if not account:
                raise NotFound("Account not found.")
            if account.role == Role.admin:
                raise Forbidden("Admin accounts cannot be suspended through this action.")
            account.is_suspended = not account.is_suspended
            s.add(account)
            action = 'Suspended' if account.is_suspended else 'Unsuspended'
            if admin_id:
                label = account.email if account.role != Role.delegate else account.numberphone
                s.add(AdminLog(admin_id=admin_id,
                               action=f"{action} account: {account.fullname or label} (ID: {account.id})"))
            else:
                logger.warning("ADMIN_ACTION_NOT_LOGGED", extra={"account_id": account.id})
            s.commit()
            s.refresh(account)
            logger.info("ACCOUNT_SUSPENSION_TOGGLED",
                        extra={"account_id": account.id, "is_suspended": account.is_suspended})
            return account

    def list_admin_logs(self, limit: int = 50) -> List[AdminLog]:
        with self.db.session() as s:
            statement = select(AdminLog).order_by(AdminLog.created_at.desc(), AdminLog.id.desc()).limit(limit)
            return list(s.exec(statement).all())
