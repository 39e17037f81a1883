from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .auth_models import Usuario
from .auth_security import hash_password, verify_password
from .db import unidad_de_trabajo
from .errores import ErrorValidacion


def crear_usuario(sesiones: sessionmaker[Session], username: str, password: str) -> str:
    username = username.strip().lower()
    if not username or not password:
        raise ErrorValidacion("Usuario y contraseña son obligatorios")

    with unidad_de_trabajo(sesiones) as s:
        exists = s.execute(select(Usuario).where(Usuario.username == username)).scalar_one_or_none()
        if exists:
            raise ErrorValidacion("El usuario ya está registrado")

        u = Usuario(username=username, password_hash=hash_password(password))
        s.add(u)
        s.flush()
        return u.id


def autenticar(sesiones: sessionmaker[Session], username: str, password: str) -> Usuario | None:
    username = username.strip().lower()
    with unidad_de_trabajo(sesiones) as s:
        u = s.execute(select(Usuario).where(Usuario.username == username)).scalar_one_or_none()
        if not u or not verify_password(password, u.password_hash):
            return None
        return u


def obtener_usuario(sesiones: sessionmaker[Session], user_id: str) -> Usuario | None:
    with unidad_de_trabajo(sesiones) as s:
        return s.get(Usuario, user_id)
