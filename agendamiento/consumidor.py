"""
Worker de notificaciones: consume ``appointment.*`` de la cola durable.

Traducción de resultados:
- PROCESSED          -> ack
- RETRYABLE_FAILURE  -> se republica a la misma cola con ``x-reintentos`` + 1
                        y ack; superado el máximo, reject sin requeue (DLX)
- POISON_MESSAGE     -> reject sin requeue (DLX)

Un evento a la vez (prefetch 1).
"""

from __future__ import annotations

import logging
import time
from typing import Any

from kombu import Connection, Producer
from kombu.entity import PERSISTENT_DELIVERY_MODE
from kombu.mixins import ConsumerMixin

from .config import Settings
from .despachador import DespachadorNotificaciones, Resultado
from .eventos import cola_dead_letter, cola_notificaciones

logger = logging.getLogger(__name__)

HEADER_REINTENTOS = "x-reintentos"


class ConsumidorEventos(ConsumerMixin):

    def __init__(
        self,
        connection: Connection,
        settings: Settings,
        despachador: DespachadorNotificaciones,
        espera: float = 1.0,
    ) -> None:
        self.connection = connection
        self.despachador = despachador
        self.cola = cola_notificaciones(settings)
        self.cola_dlq = cola_dead_letter(settings)
        self.max_reintentos = settings.consumidor_max_reintentos
        self.espera = espera

    def get_consumers(self, Consumer, channel):
        # La DLQ se declara acá para que exista antes del primer reject
        self.cola_dlq(channel).declare()
        return [
            Consumer(
                queues=[self.cola],
                callbacks=[self.on_message],
                accept=["json"],
                prefetch_count=1,
            )
        ]

    def on_consume_ready(self, connection, channel, consumers, **kwargs) -> None:
        logger.info("Consumiendo %s (dead-letter: %s)", self.cola.name, self.cola_dlq.name)

    def on_decode_error(self, message, exc) -> None:
        logger.error("Mensaje ilegible (%s), se envía a dead-letter: %s", message.content_type, exc)
        message.reject(requeue=False)

    def on_message(self, body: Any, message) -> None:
        try:
            resultado = self.despachador.procesar(body)
        except Exception:
            logger.exception("Error inesperado procesando el mensaje")
            resultado = Resultado.RETRYABLE_FAILURE

        if resultado is Resultado.PROCESSED:
            message.ack()
            return

        if resultado is Resultado.POISON_MESSAGE:
            logger.error("Mensaje venenoso, se envía a dead-letter: %s", _evento_id(body))
            message.reject(requeue=False)
            return

        reintentos = int((message.headers or {}).get(HEADER_REINTENTOS, 0)) + 1
        if reintentos > self.max_reintentos:
            logger.error(
                "Evento %s superó %s reintentos, se envía a dead-letter", _evento_id(body), self.max_reintentos
            )
            message.reject(requeue=False)
            return

        self._esperar(reintentos)
        self.reencolar(body, message, reintentos)
        message.ack()
        logger.warning("Evento %s reencolado (reintento %s/%s)", _evento_id(body), reintentos, self.max_reintentos)

    def reencolar(self, body: Any, message, reintentos: int) -> None:
        """Republica por el exchange default directamente a la cola de origen."""
        headers = dict(message.headers or {})
        headers[HEADER_REINTENTOS] = reintentos
        Producer(message.channel).publish(
            body,
            exchange="",
            routing_key=self.cola.name,
            serializer="json",
            headers=headers,
            delivery_mode=PERSISTENT_DELIVERY_MODE,
        )

    def _esperar(self, reintentos: int) -> None:
        if self.espera > 0:
            time.sleep(min(self.espera * 2 ** (reintentos - 1), 30))


def _evento_id(body: Any) -> Any:
    return body.get("evento_id") if isinstance(body, dict) else None
