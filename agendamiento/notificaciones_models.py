from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Enum, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base
from .models import ahora_utc


class TipoNotificacion(enum.Enum):
    AGENDAMIENTO = "AGENDAMIENTO"
    CONFIRMACION = "CONFIRMACION"
    MODIFICACION = "MODIFICACION"
    CANCELACION = "CANCELACION"


class CanalNotificacion(enum.Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"


class EstadoNotificacion(enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class Notificacion(Base):
    """
    Una fila por (evento, canal).
    La clave única permite reprocesar un evento duplicado sin reenviar lo ya enviado.
    """
    __tablename__ = "notificaciones"
    __table_args__ = (UniqueConstraint("evento_id", "canal", name="uq_notificacion_evento_canal"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    evento_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    tipo: Mapped[TipoNotificacion] = mapped_column(Enum(TipoNotificacion, name="tipo_notificacion"), nullable=False)
    canal: Mapped[CanalNotificacion] = mapped_column(Enum(CanalNotificacion, name="canal_notificacion"), nullable=False)
    estado: Mapped[EstadoNotificacion] = mapped_column(
        Enum(EstadoNotificacion, name="estado_notificacion"), default=EstadoNotificacion.PENDING, nullable=False
    )

    destinatario: Mapped[str] = mapped_column(String(200), nullable=False)
    asunto: Mapped[str | None] = mapped_column(String(200), nullable=True)
    contenido: Mapped[str] = mapped_column(Text, nullable=False)

    intentos: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    paciente_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    medico_id: Mapped[int] = mapped_column(Integer, nullable=False)
    turno_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    creada_en: Mapped[datetime] = mapped_column(DateTime, default=ahora_utc, nullable=False)
    enviada_en: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class Plantilla(Base):
    __tablename__ = "plantillas"
    __table_args__ = (UniqueConstraint("nombre", name="uq_plantilla_nombre"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    nombre: Mapped[str] = mapped_column(String(100), nullable=False)
    tipo: Mapped[TipoNotificacion] = mapped_column(Enum(TipoNotificacion, name="tipo_notificacion"), nullable=False)
    canal: Mapped[CanalNotificacion] = mapped_column(Enum(CanalNotificacion, name="canal_notificacion"), nullable=False)

    # Solo EMAIL usa asunto
    asunto: Mapped[str | None] = mapped_column(String(200), nullable=True)
    contenido: Mapped[str] = mapped_column(Text, nullable=False)
    variables: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    activa: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    creada_en: Mapped[datetime] = mapped_column(DateTime, default=ahora_utc, nullable=False)
