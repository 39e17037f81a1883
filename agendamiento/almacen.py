"""
Puerto de almacenamiento de turnos y su único adaptador (SQLAlchemy).

Los métodos reciben la sesión de la unidad de trabajo en curso: el cambio
del turno, el historial y el outbox se confirman en la misma transacción.
"""

from __future__ import annotations

import threading
import zlib
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date, datetime, time
from typing import Iterator

from sqlalchemy import and_, func, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import ESTADOS_LIBERADOS, EstadoTurno, HistorialCambio, TipoCambio, Turno


class AlmacenTurnos(ABC):
    """Contrato de persistencia que usa la máquina de estados."""

    @abstractmethod
    def obtener(self, session: Session, turno_id: int, bloquear: bool = False) -> Turno | None:
        """Con bloquear=True toma lock de fila (SELECT ... FOR UPDATE) donde el motor lo soporta."""
        pass

    @abstractmethod
    def guardar(self, session: Session, turno: Turno) -> Turno:
        """Inserta o actualiza y hace flush (el id queda asignado)."""
        pass

    @abstractmethod
    def hay_superposicion(
        self,
        session: Session,
        medico_id: int,
        fecha: date,
        desde: time | None,
        hasta: time | None,
        inclusivo: bool,
        excluir_id: int | None = None,
    ) -> bool:
        pass

    @abstractmethod
    def listar(
        self,
        session: Session,
        estado: EstadoTurno | None = None,
        medico_id: int | None = None,
        paciente_id: int | None = None,
        fecha: date | None = None,
        fecha_desde: date | None = None,
        fecha_hasta: date | None = None,
    ) -> list[Turno]:
        pass

    @abstractmethod
    def historial(self, session: Session, turno_id: int) -> list[HistorialCambio]:
        pass

    @abstractmethod
    def buscar_historial(
        self,
        session: Session,
        turno_id: int | None,
        tipo: TipoCambio | None,
        desde: datetime | None,
        hasta: datetime | None,
        offset: int,
        limite: int,
    ) -> tuple[list[HistorialCambio], int]:
        """Una página de cambios (desde inclusive, hasta exclusivo) y el total sin paginar."""
        pass

    @abstractmethod
    def contar_cambios(self, session: Session, desde: datetime, hasta: datetime) -> dict[TipoCambio, int]:
        pass

    @abstractmethod
    def bloquear_agenda(self, session: Session, medico_id: int, fecha: date) -> None:
        """Exclusión mutua entre transacciones sobre la agenda de un médico en un día."""
        pass


def es_conflicto_de_slot(exc: IntegrityError) -> bool:
    msg = str(exc.orig)
    return "uq_turno_medico_slot" in msg or "turnos.medico_id, turnos.fecha, turnos.hora" in msg


class AlmacenTurnosSQL(AlmacenTurnos):

    def obtener(self, session: Session, turno_id: int, bloquear: bool = False) -> Turno | None:
        return session.get(Turno, turno_id, with_for_update=True if bloquear else None)

    def guardar(self, session: Session, turno: Turno) -> Turno:
        session.add(turno)
        session.flush()
        return turno

    def hay_superposicion(
        self,
        session: Session,
        medico_id: int,
        fecha: date,
        desde: time | None,
        hasta: time | None,
        inclusivo: bool,
        excluir_id: int | None = None,
    ) -> bool:
        condiciones = [
            Turno.medico_id == medico_id,
            Turno.fecha == fecha,
            Turno.estado.not_in(list(ESTADOS_LIBERADOS)),
        ]
        # None = sin cota (la ventana cruza la medianoche)
        if desde is not None:
            condiciones.append(Turno.hora >= desde if inclusivo else Turno.hora > desde)
        if hasta is not None:
            condiciones.append(Turno.hora <= hasta if inclusivo else Turno.hora < hasta)

        q = select(Turno.id).where(and_(*condiciones)).limit(1)
        if excluir_id is not None:
            q = q.where(Turno.id != excluir_id)
        return session.execute(q).first() is not None

    def listar(
        self,
        session: Session,
        estado: EstadoTurno | None = None,
        medico_id: int | None = None,
        paciente_id: int | None = None,
        fecha: date | None = None,
        fecha_desde: date | None = None,
        fecha_hasta: date | None = None,
    ) -> list[Turno]:
        q = select(Turno)
        if estado is not None:
            q = q.where(Turno.estado == estado)
        if medico_id is not None:
            q = q.where(Turno.medico_id == medico_id)
        if paciente_id is not None:
            q = q.where(Turno.paciente_id == paciente_id)
        if fecha is not None:
            q = q.where(Turno.fecha == fecha)
        if fecha_desde is not None:
            q = q.where(Turno.fecha >= fecha_desde)
        if fecha_hasta is not None:
            q = q.where(Turno.fecha <= fecha_hasta)
        q = q.order_by(Turno.fecha.desc(), Turno.hora.desc(), Turno.id.desc())
        return list(session.scalars(q))

    def historial(self, session: Session, turno_id: int) -> list[HistorialCambio]:
        q = (
            select(HistorialCambio)
            .where(HistorialCambio.turno_id == turno_id)
            .order_by(HistorialCambio.fecha_cambio.desc(), HistorialCambio.id.desc())
        )
        return list(session.scalars(q))

    def buscar_historial(
        self,
        session: Session,
        turno_id: int | None,
        tipo: TipoCambio | None,
        desde: datetime | None,
        hasta: datetime | None,
        offset: int,
        limite: int,
    ) -> tuple[list[HistorialCambio], int]:
        condiciones = []
        if turno_id is not None:
            condiciones.append(HistorialCambio.turno_id == turno_id)
        if tipo is not None:
            condiciones.append(HistorialCambio.tipo_cambio == tipo)
        if desde is not None:
            condiciones.append(HistorialCambio.fecha_cambio >= desde)
        if hasta is not None:
            condiciones.append(HistorialCambio.fecha_cambio < hasta)

        total = session.scalar(select(func.count(HistorialCambio.id)).where(*condiciones))
        q = (
            select(HistorialCambio)
            .where(*condiciones)
            .order_by(HistorialCambio.fecha_cambio.desc(), HistorialCambio.id.desc())
            .offset(offset)
            .limit(limite)
        )
        return list(session.scalars(q)), total or 0

    def contar_cambios(self, session: Session, desde: datetime, hasta: datetime) -> dict[TipoCambio, int]:
        q = (
            select(HistorialCambio.tipo_cambio, func.count(HistorialCambio.id))
            .where(HistorialCambio.fecha_cambio >= desde, HistorialCambio.fecha_cambio < hasta)
            .group_by(HistorialCambio.tipo_cambio)
        )
        return {tipo: cantidad for tipo, cantidad in session.execute(q)}

    def bloquear_agenda(self, session: Session, medico_id: int, fecha: date) -> None:
        # En PostgreSQL el lock se libera solo al terminar la transacción
        if session.get_bind().dialect.name == "postgresql":
            clave = zlib.crc32(f"{medico_id}:{fecha.isoformat()}".encode())
            session.execute(text("SELECT pg_advisory_xact_lock(:k)"), {"k": clave})


class CandadosAgenda:
    """
    Locks en proceso por (médico, fecha). Cubren toda la unidad de trabajo,
    así el chequeo de disponibilidad y el insert no se intercalan entre hilos.
    """

    def __init__(self) -> None:
        self._guardia = threading.Lock()
        # clave -> [lock, hilos que lo tienen o lo esperan]
        self._candados: dict[tuple[int, date], list] = {}

    def __len__(self) -> int:
        with self._guardia:
            return len(self._candados)

    def _referenciar(self, claves: list[tuple[int, date]]) -> list[threading.Lock]:
        with self._guardia:
            candados = []
            for clave in claves:
                entrada = self._candados.setdefault(clave, [threading.Lock(), 0])
                entrada[1] += 1
                candados.append(entrada[0])
            return candados

    def _soltar(self, claves: list[tuple[int, date]]) -> None:
        with self._guardia:
            for clave in claves:
                entrada = self._candados[clave]
                entrada[1] -= 1
                if entrada[1] == 0:
                    del self._candados[clave]

    @contextmanager
    def tomar(self, *slots: tuple[int, date]) -> Iterator[None]:
        # Orden fijo para no generar deadlocks al tomar dos agendas (reprogramación)
        claves = sorted(set(slots))
        candados = self._referenciar(claves)
        tomados: list[threading.Lock] = []
        try:
            for c in candados:
                c.acquire()
                tomados.append(c)
            yield
        finally:
            for c in reversed(tomados):
                c.release()
            self._soltar(claves)
