"""
Despacho de notificaciones a partir de eventos de turnos.

``procesar`` nunca lanza: devuelve un ``Resultado`` explícito y el consumidor
decide ack / reencolado / dead-letter.

- PROCESSED: las filas de Notificacion quedaron escritas (SENT o FAILED).
- RETRYABLE_FAILURE: servicio externo o base de datos no disponibles.
- POISON_MESSAGE: payload mal formado, paciente/médico inexistente,
  plantilla faltante o inválida, variable faltante.
"""

from __future__ import annotations

import enum
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Mapping

from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .db import unidad_de_trabajo
from .directorio import Directorio
from .errores import NoEncontrado, PlantillaInvalida, ServicioNoDisponible, VariableFaltante
from .eventos import (
    EVENTO_CANCELADO,
    EVENTO_COMPLETADO,
    EVENTO_CONFIRMADO,
    EVENTO_CREADO,
    EVENTO_MODIFICADO,
    EVENTO_NO_SHOW,
)
from .models import ahora_utc
from .notificaciones_models import (
    CanalNotificacion,
    EstadoNotificacion,
    Notificacion,
    Plantilla,
    TipoNotificacion,
)
from .plantillas import PlantillaNotificacion, render
from .transportes import TransporteCanal

logger = logging.getLogger(__name__)


class Resultado(enum.Enum):
    PROCESSED = "PROCESSED"
    RETRYABLE_FAILURE = "RETRYABLE_FAILURE"
    POISON_MESSAGE = "POISON_MESSAGE"


TIPOS_POR_EVENTO = {
    EVENTO_CREADO: TipoNotificacion.AGENDAMIENTO,
    EVENTO_CONFIRMADO: TipoNotificacion.CONFIRMACION,
    EVENTO_MODIFICADO: TipoNotificacion.MODIFICACION,
    EVENTO_CANCELADO: TipoNotificacion.CANCELACION,
}

EVENTOS_SIN_NOTIFICACION = frozenset({EVENTO_COMPLETADO, EVENTO_NO_SHOW})


# =========================
# Payload
# =========================
class TurnoEvento(BaseModel):
    id: int
    paciente_id: int
    medico_id: int
    fecha: date
    hora: str
    estado: str
    motivo: str | None = None
    motivo_cancelacion: str | None = None


class EventoTurno(BaseModel):
    evento_id: str
    tipo: str
    ocurrido_en: datetime
    turno: TurnoEvento
    motivo: str | None = None
    datos_anteriores: dict[str, Any] | None = None


class MensajeVenenoso(Exception):
    pass


@dataclass(frozen=True)
class _Envio:
    notificacion_id: int
    canal: CanalNotificacion
    destinatario: str
    asunto: str | None
    contenido: str


def _fecha_ddmmyyyy(valor: date | str | None) -> str | None:
    if valor is None:
        return None
    if isinstance(valor, str):
        valor = date.fromisoformat(valor)
    return valor.strftime("%d/%m/%Y")


def _nombre_completo(persona: Mapping[str, Any]) -> str | None:
    nombre = " ".join(str(p) for p in (persona.get("nombre"), persona.get("apellido")) if p)
    return nombre or None


def variables_de_evento(
    evento: EventoTurno,
    paciente: Mapping[str, Any],
    medico: Mapping[str, Any],
) -> dict[str, Any]:
    """Variables disponibles para las plantillas. Fechas en dd/mm/yyyy."""
    turno = evento.turno
    anteriores = evento.datos_anteriores or {}
    return {
        "paciente_nombre": _nombre_completo(paciente),
        "medico_nombre": _nombre_completo(medico),
        "especialidad": medico.get("especialidad"),
        "fecha": _fecha_ddmmyyyy(turno.fecha),
        "hora": turno.hora,
        "motivo": evento.motivo or turno.motivo_cancelacion,
        "fecha_anterior": _fecha_ddmmyyyy(anteriores.get("fecha")),
        "hora_anterior": anteriores.get("hora"),
        "fecha_nueva": _fecha_ddmmyyyy(turno.fecha),
        "hora_nueva": turno.hora,
    }


def destinos_de(paciente: Mapping[str, Any]) -> list[tuple[CanalNotificacion, str]]:
    destinos = []
    if paciente.get("email"):
        destinos.append((CanalNotificacion.EMAIL, str(paciente["email"])))
    if paciente.get("telefono"):
        destinos.append((CanalNotificacion.SMS, str(paciente["telefono"])))
    return destinos


# =========================
# Despachador
# =========================
class DespachadorNotificaciones:

    def __init__(
        self,
        sesiones: sessionmaker[Session],
        directorio: Directorio,
        transportes: Mapping[CanalNotificacion, TransporteCanal],
        reloj=ahora_utc,
    ) -> None:
        self.sesiones = sesiones
        self.directorio = directorio
        self.transportes = dict(transportes)
        self.reloj = reloj

    def procesar(self, payload: Any) -> Resultado:
        try:
            evento = EventoTurno.model_validate(payload)
        except ValidationError as exc:
            logger.error("Evento mal formado, se descarta: %s", exc)
            return Resultado.POISON_MESSAGE

        if evento.tipo in EVENTOS_SIN_NOTIFICACION:
            logger.info("Evento %s (%s) sin notificación asociada", evento.evento_id, evento.tipo)
            return Resultado.PROCESSED

        tipo = TIPOS_POR_EVENTO.get(evento.tipo)
        if tipo is None:
            logger.error("Tipo de evento desconocido %s (%s)", evento.tipo, evento.evento_id)
            return Resultado.POISON_MESSAGE

        try:
            paciente = self.directorio.paciente(evento.turno.paciente_id)
            medico = self.directorio.medico(evento.turno.medico_id)
        except NoEncontrado as exc:
            logger.error("Evento %s: %s", evento.evento_id, exc.mensaje)
            return Resultado.POISON_MESSAGE
        except ServicioNoDisponible as exc:
            logger.warning("Evento %s: %s", evento.evento_id, exc.mensaje)
            return Resultado.RETRYABLE_FAILURE

        destinos = destinos_de(paciente)
        if not destinos:
            logger.warning("Paciente %s sin email ni teléfono, evento %s", evento.turno.paciente_id, evento.evento_id)
            return Resultado.PROCESSED

        try:
            envios = self._preparar(evento, tipo, destinos, variables_de_evento(evento, paciente, medico))
            resultados = self._enviar(envios)
            self._registrar(resultados)
        except MensajeVenenoso as exc:
            logger.error("Evento %s descartado: %s", evento.evento_id, exc)
            return Resultado.POISON_MESSAGE
        except SQLAlchemyError:
            logger.exception("Error de base de datos procesando el evento %s", evento.evento_id)
            return Resultado.RETRYABLE_FAILURE

        enviados = sum(1 for _, error in resultados if error is None)
        logger.info(
            "Evento %s procesado: %s/%s notificaciones enviadas", evento.evento_id, enviados, len(resultados)
        )
        return Resultado.PROCESSED

    def _preparar(
        self,
        evento: EventoTurno,
        tipo: TipoNotificacion,
        destinos: list[tuple[CanalNotificacion, str]],
        variables: dict[str, Any],
    ) -> list[_Envio]:
        """Renderiza y deja una fila PENDING por canal. Los canales ya SENT se saltean."""
        envios = []
        with unidad_de_trabajo(self.sesiones) as s:
            for canal, destinatario in destinos:
                existente = s.execute(
                    select(Notificacion).where(
                        Notificacion.evento_id == evento.evento_id, Notificacion.canal == canal
                    )
                ).scalar_one_or_none()
                if existente is not None and existente.estado is EstadoNotificacion.SENT:
                    logger.info("Evento %s: %s ya enviado, se saltea", evento.evento_id, canal.value)
                    continue

                contenido = self._renderizar(s, tipo, canal, variables)

                n = existente or Notificacion(
                    evento_id=evento.evento_id,
                    canal=canal,
                    paciente_id=evento.turno.paciente_id,
                    medico_id=evento.turno.medico_id,
                    turno_id=evento.turno.id,
                    intentos=0,
                )
                n.tipo = tipo
                n.estado = EstadoNotificacion.PENDING
                n.destinatario = destinatario
                n.asunto = contenido.asunto
                n.contenido = contenido.contenido
                s.add(n)
                s.flush()
                envios.append(_Envio(n.id, canal, destinatario, contenido.asunto, contenido.contenido))
        return envios

    def _renderizar(self, s: Session, tipo: TipoNotificacion, canal: CanalNotificacion, variables: dict[str, Any]):
        p = s.execute(
            select(Plantilla)
            .where(Plantilla.tipo == tipo, Plantilla.canal == canal, Plantilla.activa.is_(True))
            .order_by(Plantilla.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        if p is None:
            raise MensajeVenenoso(f"No hay plantilla activa para {tipo.value}/{canal.value}")
        try:
            return render(PlantillaNotificacion.desde_modelo(p), variables)
        except (VariableFaltante, PlantillaInvalida) as exc:
            raise MensajeVenenoso(exc.mensaje) from exc

    def _enviar(self, envios: list[_Envio]) -> list[tuple[_Envio, str | None]]:
        if not envios:
            return []
        with ThreadPoolExecutor(max_workers=len(envios), thread_name_prefix="notificaciones") as pool:
            return list(pool.map(self._enviar_uno, envios))

    def _enviar_uno(self, envio: _Envio) -> tuple[_Envio, str | None]:
        transporte = self.transportes.get(envio.canal)
        if transporte is None:
            return envio, f"Canal {envio.canal.value} sin transporte configurado"
        try:
            transporte.enviar(envio.destinatario, envio.asunto, envio.contenido)
        except Exception as exc:
            logger.warning("Falló el envío %s a %s: %s", envio.canal.value, envio.destinatario, exc)
            return envio, str(exc) or type(exc).__name__
        return envio, None

    def _registrar(self, resultados: list[tuple[_Envio, str | None]]) -> None:
        with unidad_de_trabajo(self.sesiones) as s:
            for envio, error in resultados:
                n = s.get(Notificacion, envio.notificacion_id)
                if error is None:
                    n.estado = EstadoNotificacion.SENT
                    n.enviada_en = self.reloj()
                    n.error = None
                else:
                    n.estado = EstadoNotificacion.FAILED
                    n.intentos += 1
                    n.error = error[:1000]
