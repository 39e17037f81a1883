from __future__ import annotations

import enum
import uuid
from datetime import date, datetime, time, timezone
from typing import Any

from sqlalchemy import JSON, Date, DateTime, Enum, ForeignKey, Index, Integer, String, Text, Time, event, text
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


def new_uuid() -> str:
    return str(uuid.uuid4())


def ahora_utc() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class EstadoTurno(enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"


# Estados sin transiciones salientes
ESTADOS_TERMINALES = frozenset({EstadoTurno.CANCELLED, EstadoTurno.COMPLETED, EstadoTurno.NO_SHOW})

# Estados que liberan el slot del médico
ESTADOS_LIBERADOS = frozenset({EstadoTurno.CANCELLED, EstadoTurno.NO_SHOW})


class TipoCambio(enum.Enum):
    CREATED = "CREATED"
    MODIFIED = "MODIFIED"
    CANCELLED = "CANCELLED"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"


DIAS_SEMANA = ["Domingo", "Lunes", "Martes", "Miércoles", "Jueves", "Viernes", "Sábado"]


def dia_semana_de(fecha: date) -> int:
    """Día de la semana con 0=domingo ... 6=sábado."""
    return fecha.isoweekday() % 7


class Turno(Base):
    __tablename__ = "turnos"
    __table_args__ = (
        # Respaldo contra doble reserva concurrente: mismo médico + misma fecha + misma hora,
        # sin contar turnos que liberaron el slot
        Index(
            "uq_turno_medico_slot",
            "medico_id",
            "fecha",
            "hora",
            unique=True,
            sqlite_where=text("estado NOT IN ('CANCELLED', 'NO_SHOW')"),
            postgresql_where=text("estado NOT IN ('CANCELLED', 'NO_SHOW')"),
        ),
        Index("ix_turno_medico_fecha", "medico_id", "fecha"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Referencias a otros servicios, sin FK
    paciente_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    medico_id: Mapped[int] = mapped_column(Integer, nullable=False)

    fecha: Mapped[date] = mapped_column(Date, nullable=False)
    hora: Mapped[time] = mapped_column(Time, nullable=False)
    dia_semana: Mapped[int] = mapped_column(Integer, nullable=False)

    estado: Mapped[EstadoTurno] = mapped_column(
        Enum(EstadoTurno, name="estado_turno"), default=EstadoTurno.PENDING, nullable=False
    )

    motivo: Mapped[str | None] = mapped_column(String(200), nullable=True)
    observaciones: Mapped[str | None] = mapped_column(String(500), nullable=True)
    motivo_cancelacion: Mapped[str | None] = mapped_column(String(200), nullable=True)

    creado_en: Mapped[datetime] = mapped_column(DateTime, default=ahora_utc, nullable=False)
    actualizado_en: Mapped[datetime] = mapped_column(DateTime, default=ahora_utc, nullable=False)

    # Bloqueo optimista: el UPDATE exige la versión leída
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"Turno({self.id}, medico={self.medico_id}, {self.fecha} {self.hora}, {self.estado.value})"


def turno_a_dict(turno: Turno) -> dict[str, Any]:
    """Snapshot completo y serializable a JSON (historial, eventos y API)."""
    return {
        "id": turno.id,
        "paciente_id": turno.paciente_id,
        "medico_id": turno.medico_id,
        "fecha": turno.fecha.isoformat(),
        "hora": turno.hora.strftime("%H:%M"),
        "dia_semana": turno.dia_semana,
        "estado": turno.estado.value,
        "motivo": turno.motivo,
        "observaciones": turno.observaciones,
        "motivo_cancelacion": turno.motivo_cancelacion,
        "creado_en": turno.creado_en.isoformat() if turno.creado_en else None,
        "actualizado_en": turno.actualizado_en.isoformat() if turno.actualizado_en else None,
    }


class HistorialCambio(Base):
    """
    Registro inmutable de cada transición de un turno.
    Solo INSERT: el ORM rechaza UPDATE y DELETE (ver listeners abajo).
    """
    __tablename__ = "historial_cambios"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    turno_id: Mapped[int] = mapped_column(ForeignKey("turnos.id"), nullable=False, index=True)
    tipo_cambio: Mapped[TipoCambio] = mapped_column(Enum(TipoCambio, name="tipo_cambio"), nullable=False)
    descripcion: Mapped[str] = mapped_column(Text, nullable=False)

    # None para cambios iniciados por el sistema
    actor_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    datos_anteriores: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    datos_nuevos: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    fecha_cambio: Mapped[datetime] = mapped_column(DateTime, default=ahora_utc, nullable=False)


class HistorialInmutable(RuntimeError):
    pass


@event.listens_for(HistorialCambio, "before_update")
def _bloquear_update_historial(mapper, connection, target) -> None:
    raise HistorialInmutable(f"El registro de historial {target.id} no se puede modificar")


@event.listens_for(HistorialCambio, "before_delete")
def _bloquear_delete_historial(mapper, connection, target) -> None:
    raise HistorialInmutable(f"El registro de historial {target.id} no se puede eliminar")


def historial_a_dict(h: HistorialCambio) -> dict[str, Any]:
    return {
        "id": h.id,
        "turno_id": h.turno_id,
        "tipo_cambio": h.tipo_cambio.value,
        "descripcion": h.descripcion,
        "actor_id": h.actor_id,
        "datos_anteriores": h.datos_anteriores,
        "datos_nuevos": h.datos_nuevos,
        "fecha_cambio": h.fecha_cambio.isoformat(),
    }


class EventoSaliente(Base):
    """
    Outbox: el evento se escribe en la misma transacción que el cambio
    y se publica en el broker después del commit.
    """
    __tablename__ = "eventos_salientes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    routing_key: Mapped[str] = mapped_column(String(60), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)

    creado_en: Mapped[datetime] = mapped_column(DateTime, default=ahora_utc, nullable=False)
    publicado_en: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    intentos: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ultimo_error: Mapped[str | None] = mapped_column(Text, nullable=True)
