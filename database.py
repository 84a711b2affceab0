"""Módulo de acceso a la base de datos.

Define el motor y utilidades de sesión para realizar operaciones CRUD y
transacciones sobre cuentas y pagos.
"""

import logging
from typing import Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session
from config import Settings
from errors import InternalError

logger = logging.getLogger(__name__)

# Segundos extra de espera por el bloqueo de SQLite sobre el timeout de la pasarela.
SQLITE_LOCK_MARGIN = 5.0

# build_engine: Crea el motor SQLAlchemy; SQLite en memoria comparte una única conexión.
# lock_timeout es la espera máxima (s) de SQLite por el bloqueo de escritura.
def build_engine(url: str, lock_timeout: Optional[float] = None):
    if url.startswith('sqlite'):
        connect_args = {'check_same_thread': False}
        if lock_timeout is not None:
            connect_args['timeout'] = lock_timeout
        kwargs = {'connect_args': connect_args}
        if ':memory:' in url or url in ('sqlite://', 'sqlite:///'):
            kwargs['poolclass'] = StaticPool
        return create_engine(url, echo=False, **kwargs)
    return create_engine(url, echo=False, pool_pre_ping=True)

class Database:
    """Agrupa el motor y la fábrica de sesiones construidos desde Settings."""
    def __init__(self, settings: Settings):
        self.settings = settings
        # Un inicio de recarga mantiene el bloqueo de escritura mientras espera a la
        # pasarela; las demás escrituras deben esperar al menos ese tiempo.
        self.engine = build_engine(settings.database_url,
                                   lock_timeout=settings.momo_timeout + SQLITE_LOCK_MARGIN)

    # init_db: Crea todas las tablas definidas en los modelos si no existen.
    def init_db(self):
        import models  # noqa: F401  registra las tablas en el metadata
        SQLModel.metadata.create_all(self.engine)

    def session(self):
        return DBSession(self.engine)

    def dispose(self):
        self.engine.dispose()

class DBSession:
    """Context manager para manejar sesiones.

    Al salir del contexto realiza rollback si hubo excepción y cierra la sesión.
    Los errores de almacenamiento se convierten en InternalError; los errores
    de dominio (AppError) se propagan tal cual.
    """
    def __init__(self, engine):
        self.engine = engine

    def __enter__(self):
        self.session = Session(self.engine, expire_on_commit=False)
        return self.session

    def __exit__(self, exc_type, exc, tb):
        try:
            if exc:
                self.session.rollback()
        finally:
            self.session.close()
        if isinstance(exc, SQLAlchemyError):
            logger.error("DB_TRANSACTION_ABORTED", extra={"error": str(exc)})
            raise InternalError("Storage failure, transaction aborted.", detail=str(exc)) from exc
        return False
