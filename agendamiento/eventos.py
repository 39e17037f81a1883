"""
Publicación de eventos de turnos.

- Topología: exchange topic durable, cola de notificaciones ligada a
  ``appointment.*`` y dead-letter exchange/cola para mensajes venenosos.
- Outbox: la máquina de estados escribe el evento en ``eventos_salientes``
  dentro de su transacción; después del commit ``RelevoEventos`` lo publica.
  Una falla de publicación se registra en la fila y en el log, nunca se
  propaga al llamador. ``relevar_pendientes`` reintenta lo que quedó sin
  publicar (entrega al-menos-una-vez).
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable

from kombu import Connection, Exchange, Producer, Queue
from kombu.entity import PERSISTENT_DELIVERY_MODE
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .config import Settings
from .db import unidad_de_trabajo
from .models import EventoSaliente, TipoCambio, ahora_utc, new_uuid

logger = logging.getLogger(__name__)

EVENTO_CREADO = "appointment.created"
EVENTO_MODIFICADO = "appointment.modified"
EVENTO_CANCELADO = "appointment.cancelled"
EVENTO_CONFIRMADO = "appointment.confirmed"
EVENTO_COMPLETADO = "appointment.completed"
EVENTO_NO_SHOW = "appointment.no_show"

PATRON_TURNOS = "appointment.*"

ROUTING_KEYS = {
    TipoCambio.CREATED: EVENTO_CREADO,
    TipoCambio.MODIFIED: EVENTO_MODIFICADO,
    TipoCambio.CANCELLED: EVENTO_CANCELADO,
    TipoCambio.CONFIRMED: EVENTO_CONFIRMADO,
    TipoCambio.COMPLETED: EVENTO_COMPLETADO,
    TipoCambio.NO_SHOW: EVENTO_NO_SHOW,
}


# =========================
# Topología
# =========================
def exchange_eventos(nombre: str) -> Exchange:
    return Exchange(nombre, type="topic", durable=True, delivery_mode=PERSISTENT_DELIVERY_MODE)


def cola_notificaciones(settings: Settings) -> Queue:
    return Queue(
        settings.notificaciones_queue,
        exchange=exchange_eventos(settings.eventos_exchange),
        routing_key=PATRON_TURNOS,
        durable=True,
        queue_arguments={"x-dead-letter-exchange": settings.dead_letter_exchange},
    )


def cola_dead_letter(settings: Settings) -> Queue:
    return Queue(
        settings.dead_letter_queue,
        exchange=exchange_eventos(settings.dead_letter_exchange),
        routing_key="#",
        durable=True,
    )


def crear_conexion(settings: Settings) -> Connection:
    """Conexión al broker creada al arrancar y compartida por el proceso."""
    return Connection(settings.broker_url, connect_timeout=settings.http_timeout_seconds)


def construir_evento(
    routing_key: str,
    turno: dict[str, Any],
    ocurrido_en: datetime,
    evento_id: str | None = None,
    **metadata: Any,
) -> dict[str, Any]:
    payload = {
        "evento_id": evento_id or new_uuid(),
        "tipo": routing_key,
        "ocurrido_en": ocurrido_en.isoformat(),
        "turno": turno,
    }
    payload.update(metadata)
    return payload


# =========================
# Publicador
# =========================
class PublicadorEventos(ABC):

    @abstractmethod
    def publicar(self, routing_key: str, payload: dict[str, Any], evento_id: str) -> None:
        """Publica un evento; lanza excepción si el broker no lo aceptó."""
        pass


class PublicadorKombu(PublicadorEventos):
    """
    Publica JSON persistente en el exchange topic.
    Un intento acotado: no bloquea la respuesta HTTP más de lo configurado.
    """

    def __init__(self, connection: Connection, exchange: str, max_intentos: int = 2) -> None:
        self.connection = connection
        self.exchange = exchange_eventos(exchange)
        self.max_intentos = max(max_intentos, 1)
        # Las conexiones kombu no son thread-safe
        self._lock = threading.Lock()

    def _politica(self) -> dict[str, Any]:
        return {
            "max_retries": self.max_intentos - 1,
            "interval_start": 0,
            "interval_step": 0.5,
            "interval_max": 1,
        }

    def publicar(self, routing_key: str, payload: dict[str, Any], evento_id: str) -> None:
        with self._lock:
            self.connection.ensure_connection(**self._politica())
            producer = Producer(self.connection)
            producer.publish(
                payload,
                exchange=self.exchange,
                routing_key=routing_key,
                declare=[self.exchange],
                serializer="json",
                delivery_mode=PERSISTENT_DELIVERY_MODE,
                message_id=evento_id,
                retry=True,
                retry_policy=self._politica(),
            )
        logger.info("Evento %s publicado (%s)", routing_key, evento_id)


# =========================
# Outbox
# =========================
class RelevoEventos:

    def __init__(self, sesiones: sessionmaker[Session], publicador: PublicadorEventos) -> None:
        self.sesiones = sesiones
        self.publicador = publicador

    def encolar(self, session: Session, routing_key: str, payload: dict[str, Any]) -> str:
        """Agrega el evento al outbox dentro de la transacción del llamador."""
        evento = EventoSaliente(id=payload["evento_id"], routing_key=routing_key, payload=payload)
        session.add(evento)
        return evento.id

    def despachar(self, evento_ids: Iterable[str]) -> int:
        """Publica los eventos indicados (en orden). Devuelve cuántos salieron."""
        publicados = 0
        for evento_id in evento_ids:
            with unidad_de_trabajo(self.sesiones) as s:
                evento = s.get(EventoSaliente, evento_id)
                if evento is None or evento.publicado_en is not None:
                    continue

                evento.intentos += 1
                try:
                    self.publicador.publicar(evento.routing_key, evento.payload, evento.id)
                except Exception as exc:
                    evento.ultimo_error = str(exc)[:1000]
                    logger.warning(
                        "No se pudo publicar %s (%s), queda en el outbox: %s",
                        evento.routing_key,
                        evento.id,
                        exc,
                    )
                    continue

                evento.publicado_en = ahora_utc()
                evento.ultimo_error = None
                publicados += 1
        return publicados

    def pendientes(self, limite: int = 100) -> list[str]:
        with unidad_de_trabajo(self.sesiones) as s:
            q = (
                select(EventoSaliente.id)
                .where(EventoSaliente.publicado_en.is_(None))
                .order_by(EventoSaliente.creado_en.asc())
                .limit(limite)
            )
            return list(s.scalars(q))

    def relevar_pendientes(self, limite: int = 100) -> int:
        return self.despachar(self.pendientes(limite))
