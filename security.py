"""Funciones de seguridad: hashing de contraseñas y manejo de JWT.

Se utiliza bcrypt vía passlib para almacenar contraseñas y PyJWT para tokens.
La configuración del JWT llega siempre como argumento (Settings).
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from passlib.context import CryptContext
import jwt
from config import Settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# _truncate: bcrypt solo considera los primeros 72 bytes de la contraseña.
def _truncate(password: str) -> str:
    return password.encode('utf-8')[:72].decode('utf-8', errors='ignore')

# hash_password: Genera hash bcrypt de una contraseña en texto plano.
def hash_password(password: str) -> str:
    return pwd_context.hash(_truncate(password))

# verify_password: Verifica si la contraseña suministrada coincide con el hash.
def verify_password(password: str, password_hash: str) -> bool:
    if not password or not password_hash:
        return False
    return pwd_context.verify(_truncate(password), password_hash)

# create_token: Crea un JWT con sujeto (id de cuenta) y rol, expirando en minutos configurados.
def create_token(settings: Settings, sub: str, role: str) -> str:
    exp = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_exp_minutes)
    payload = {"sub": sub, "role": role, "exp": exp}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)

# decode_token: Decodifica el JWT y retorna payload o None si inválido/expirado.
def decode_token(settings: Settings, token: str):
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        return None

# verify_bearer: Traduce un token bearer a {account_id, role} o None.
def verify_bearer(settings: Settings, token: str) -> Optional[dict]:
    data = decode_token(settings, token)
    if not data or not data.get('sub') or not data.get('role'):
        return None
    return {"account_id": data['sub'], "role": data['role']}
