"""Modelos de datos persistentes y vistas públicas.

Incluye cuentas (principal, delegada y administrador), pagos de recarga y el
registro de acciones de administración. Las vistas públicas de cuenta forman
una unión etiquetada por rol y nunca exponen hashes ni correos sintéticos.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field as PydanticField
from sqlalchemy import Column, JSON, UniqueConstraint
from sqlmodel import SQLModel, Field

PLACEHOLDER_EMAIL_DOMAIN = 'delegates.invalid'


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    primary = 'primary'
    delegate = 'delegate'
    admin = 'admin'


class PaymentStatus(str, Enum):
    Pending = 'Pending'
    Completed = 'Completed'
    Failed = 'Failed'


TERMINAL_STATUSES = (PaymentStatus.Completed, PaymentStatus.Failed)


class Account(SQLModel, table=True):
    """Cuenta autenticable.

    Campos:
      role: primary | delegate | admin, fijo desde la creación.
      email: obligatorio y único para primary/admin; las delegadas reciben uno
        sintético bajo el dominio reservado .invalid.
      numberphone: normalizado; obligatorio para delegate, único por creador.
      created_by: id de la cuenta principal dueña (solo delegate).
      balance: saldo acreditado únicamente por recargas liquidadas.
      subuser_count: delegadas vivas de una cuenta principal; se reserva con un
        UPDATE condicionado al límite antes de insertar la delegada.
    """
    __tablename__ = 'accounts'
    __table_args__ = (
        UniqueConstraint('email', name='uq_accounts_email'),
        UniqueConstraint('numberphone', 'created_by', name='uq_accounts_phone_owner'),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    role: Role = Field(default=Role.primary, index=True)
    email: Optional[str] = Field(default=None, max_length=100)
    password_hash: str
    numberphone: Optional[str] = Field(default=None, index=True)
    created_by: Optional[str] = Field(default=None, foreign_key='accounts.id', index=True)
    balance: Decimal = Field(default=Decimal('0'), max_digits=18, decimal_places=2)
    subuser_count: int = 0
    is_verified: bool = False
    is_suspended: bool = Field(default=False, index=True)
    fullname: str = ''
    image: str = ''
    relationship: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Payment(SQLModel, table=True):
    """Intento de recarga y su ciclo de vida.

    status sigue Pending -> Completed | Failed y nunca abandona un estado final.
    order_ref es la clave de idempotencia; gateway_ref el requestId de Momo.
    """
    __tablename__ = 'payments'

    id: str = Field(default_factory=new_id, primary_key=True)
    order_ref: str = Field(unique=True, index=True)
    account_id: str = Field(foreign_key='accounts.id', index=True)
    amount: Decimal = Field(max_digits=18, decimal_places=2)
    currency: str = 'VND'
    method: str = 'Momo'
    order_info: str = ''
    status: PaymentStatus = Field(default=PaymentStatus.Pending, index=True)
    gateway_ref: Optional[str] = Field(default=None, index=True)
    external_txn_id: Optional[str] = None
    pay_url: Optional[str] = None
    failed_reason: Optional[str] = None
    raw_gateway_response: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, index=True)
    completed_at: Optional[datetime] = None


class AdminLog(SQLModel, table=True):
    """Registro de acciones realizadas por administradores."""
    __tablename__ = 'admin_logs'

    id: Optional[int] = Field(default=None, primary_key=True)
    admin_id: str = Field(foreign_key='accounts.id', index=True)
    action: str
    created_at: datetime = Field(default_factory=utcnow)


# ------------------------- Vistas públicas -------------------------

class _AccountViewBase(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    fullname: str = ''
    image: str = ''
    is_suspended: bool = False
    created_at: datetime


class PrimaryView(_AccountViewBase):
    role: Literal['primary'] = 'primary'
    email: str
    is_verified: bool = False
    numberphone: Optional[str] = None
    balance: Decimal = Decimal('0')


class DelegateView(_AccountViewBase):
    role: Literal['delegate'] = 'delegate'
    numberphone: str
    relationship: Optional[str] = None
    created_by: str


class AdminView(_AccountViewBase):
    role: Literal['admin'] = 'admin'
    email: str


AccountView = Annotated[Union[PrimaryView, DelegateView, AdminView], PydanticField(discriminator='role')]

_VIEWS = {Role.primary: PrimaryView, Role.delegate: DelegateView, Role.admin: AdminView}

# account_view: Construye la variante de vista correspondiente al rol de la cuenta.
def account_view(account: Account) -> AccountView:
    view_cls = _VIEWS[Role(account.role)]
    data = {name: getattr(account, name) for name in view_cls.model_fields if name != 'role'}
    return view_cls(**data)


class PaymentView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_ref: str
    account_id: str
    amount: Decimal
    currency: str
    method: str
    order_info: str
    status: PaymentStatus
    gateway_ref: Optional[str] = None
    external_txn_id: Optional[str] = None
    pay_url: Optional[str] = None
    failed_reason: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
