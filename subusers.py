"""Gestión de cuentas delegadas (subusers) de una cuenta principal.

Una cuenta principal puede tener como máximo `Settings.subuser_limit` delegadas
(10 por defecto). Las delegadas se identifican por teléfono normalizado, único
por cuenta principal, y la operación de alta es crear-o-actualizar.
"""

import logging
import re
from typing import List, Optional, Tuple
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from config import Settings
from database import Database
from errors import Conflict, NotFound, QuotaExceeded, ValidationError
from models import Account, PLACEHOLDER_EMAIL_DOMAIN, Role, new_id
from security import hash_password

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r'\D')

# normalize_phone: Deja solo dígitos y antepone 0 a números locales de 9 dígitos.
# Es idempotente: normalizar un número ya normalizado no lo cambia.
def normalize_phone(raw: str) -> str:
    digits = _NON_DIGITS.sub('', raw or '')
    if len(digits) == 9 and not digits.startswith('0'):
        return '0' + digits
    return digits

# placeholder_email: Correo único sintético para delegadas sin email real.
def placeholder_email() -> str:
    return f"delegate-{new_id()}@{PLACEHOLDER_EMAIL_DOMAIN}"


class SubuserService:
    """Alta, consulta y baja de cuentas delegadas."""
    def __init__(self, db: Database, settings: Settings):
        self.db = db
        self.settings = settings

    def create_delegate(self, owner_id: str, phone: str, password: str,
                        fullname: Optional[str] = None, image: Optional[str] = None,
                        relationship: Optional[str] = None) -> Tuple[Account, bool]:
        """Crea o actualiza la delegada (teléfono, dueño).

        Retorna la cuenta almacenada y True si fue creada, False si se actualizó.
        """
        if not phone or not password or not owner_id:
            raise ValidationError("Phone number, password and owner are required.")
        normalized = normalize_phone(phone)
        if not normalized:
            raise ValidationError("Phone number must contain digits.")

        with self.db.session() as s:
            owner = s.get(Account, owner_id)
            if not owner or owner.role != Role.primary:
                raise ValidationError("Owner account not found.")

            existing = s.exec(
                select(Account).where(
                    Account.role == Role.delegate,
                    Account.numberphone == normalized,
                    Account.created_by == owner_id,
                )
            ).first()

            if existing:
                existing.password_hash = hash_password(password)
                if fullname is not None:
                    existing.fullname = fullname
                if image is not None:
                    existing.image = image
                existing.relationship = relationship or existing.relationship or 'unknown'
                s.add(existing)
                s.commit()
                s.refresh(existing)
                logger.info("SUBUSER_UPDATED", extra={"owner_id": owner_id, "subuser_id": existing.id})
                return existing, False

            # Reserva de cupo: solo avanza si el contador sigue por debajo del límite.
            claimed = s.exec(
                update(Account)
                .where(Account.id == owner_id, Account.subuser_count < self.settings.subuser_limit)
                .values(subuser_count=Account.subuser_count + 1)
            )
            if claimed.rowcount == 0:
                logger.info("SUBUSER_QUOTA_EXCEEDED",
                            extra={"owner_id": owner_id, "limit": self.settings.subuser_limit})
                raise QuotaExceeded(f"Subuser limit of {self.settings.subuser_limit} reached.")

            delegate = Account(
                role=Role.delegate,
                email=placeholder_email(),
                password_hash=hash_password(password),
                numberphone=normalized,
                created_by=owner_id,
                fullname=fullname or '',
                image=image or '',
                relationship=relationship or 'unknown',
            )
            s.add(delegate)
            try:
                s.commit()
            except IntegrityError as exc:
                raise Conflict("Subuser with this phone number already exists.") from exc
            s.refresh(delegate)
            logger.info("SUBUSER_CREATED", extra={"owner_id": owner_id, "subuser_id": delegate.id})
            return delegate, True

    def list_delegates(self, owner_id: str) -> List[Account]:
        with self.db.session() as s:
            statement = (
                select(Account)
                .where(Account.role == Role.delegate, Account.created_by == owner_id)
                .order_by(Account.created_at)
            )
            return list(s.exec(statement).all())

    def get_delegate(self, delegate_id: str, owner_id: Optional[str] = None) -> Account:
        with self.db.session() as s:
            delegate = s.get(Account, delegate_id)
            if not delegate or delegate.role != Role.delegate:
                raise NotFound("Subuser not found.")
            if owner_id is not None and delegate.created_by != owner_id:
                raise NotFound("Subuser not found.")
            return delegate

    def delete_delegate(self, delegate_id: str, owner_id: Optional[str] = None):
        """Elimina la delegada; NotFound si no existe, no es delegada o no pertenece al dueño."""
        with self.db.session() as s:
            delegate = s.get(Account, delegate_id)
            if not delegate or delegate.role != Role.delegate:
                raise NotFound("Subuser not found.")
            if owner_id is not None and delegate.created_by != owner_id:
                raise NotFound("Subuser not found.")
            s.delete(delegate)
            s.exec(
                update(Account)
                .where(Account.id == delegate.created_by, Account.subuser_count > 0)
                .values(subuser_count=Account.subuser_count - 1)
            )
            s.commit()
            logger.info("SUBUSER_DELETED", extra={"owner_id": delegate.created_by, "subuser_id": delegate_id})
