from __future__ import annotations

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base
from .models import new_uuid


class Usuario(Base):
    """
    Usuario de la API. Su id queda como actor_id en el historial de cambios.
    - username único
    - password_hash con bcrypt (passlib)
    """
    __tablename__ = "usuarios"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    username: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
