from __future__ import annotations

from datetime import date, time

import pytest
from sqlalchemy import select

from agendamiento.despachador import DespachadorNotificaciones, Resultado
from agendamiento.eventos import (
    EVENTO_CANCELADO,
    EVENTO_COMPLETADO,
    EVENTO_CONFIRMADO,
    EVENTO_CREADO,
    EVENTO_MODIFICADO,
    EVENTO_NO_SHOW,
    construir_evento,
)
from agendamiento.notificaciones_models import CanalNotificacion, EstadoNotificacion, Notificacion, Plantilla, TipoNotificacion
from agendamiento.seed import seed_plantillas
from agendamiento.transportes import TransporteCanal

from .conftest import AHORA

TURNO = {
    "id": 12,
    "paciente_id": 1,
    "medico_id": 7,
    "fecha": "2025-03-10",
    "hora": "14:00",
    "dia_semana": 1,
    "estado": "CONFIRMED",
    "motivo": None,
    "observaciones": None,
    "motivo_cancelacion": None,
}


class TransporteGrabador(TransporteCanal):

    def __init__(self) -> None:
        self.enviados: list[tuple[str, str | None, str]] = []
        self.falla: Exception | None = None

    def enviar(self, destinatario: str, asunto: str | None, contenido: str) -> None:
        if self.falla is not None:
            raise self.falla
        self.enviados.append((destinatario, asunto, contenido))


@pytest.fixture
def transportes():
    return {CanalNotificacion.EMAIL: TransporteGrabador(), CanalNotificacion.SMS: TransporteGrabador()}


@pytest.fixture
def despachador(sesiones, directorio, transportes):
    seed_plantillas(sesiones)
    return DespachadorNotificaciones(sesiones, directorio, transportes, reloj=lambda: AHORA)


def _evento(tipo: str = EVENTO_CONFIRMADO, turno: dict | None = None, **metadata) -> dict:
    return construir_evento(tipo, dict(turno or TURNO), AHORA, evento_id="evt-1", **metadata)


def _notificaciones(sesiones) -> dict[CanalNotificacion, Notificacion]:
    with sesiones() as s:
        return {n.canal: n for n in s.scalars(select(Notificacion))}


def test_confirmacion_por_email_y_sms(despachador, transportes, sesiones):
    assert despachador.procesar(_evento()) is Resultado.PROCESSED

    email = transportes[CanalNotificacion.EMAIL].enviados
    sms = transportes[CanalNotificacion.SMS].enviados
    assert email[0][0] == "ana@example.com"
    assert email[0][1] == "Confirmación de Cita Médica - 10/03/2025"
    assert "Dr. Juan García" in email[0][2]
    assert sms[0][0] == "+5491155550001"
    assert "Hola Ana Pérez!" in sms[0][2]
    assert "10/03/2025 a las 14:00" in sms[0][2]

    filas = _notificaciones(sesiones)
    assert set(filas) == {CanalNotificacion.EMAIL, CanalNotificacion.SMS}
    for n in filas.values():
        assert n.estado is EstadoNotificacion.SENT
        assert n.tipo is TipoNotificacion.CONFIRMACION
        assert n.evento_id == "evt-1"
        assert n.turno_id == 12
        assert n.enviada_en == AHORA


@pytest.mark.parametrize(
    "tipo, esperado",
    [
        (EVENTO_CREADO, TipoNotificacion.AGENDAMIENTO),
        (EVENTO_CANCELADO, TipoNotificacion.CANCELACION),
    ],
)
def test_tipo_de_notificacion_segun_evento(despachador, sesiones, tipo, esperado):
    assert despachador.procesar(_evento(tipo, motivo="Viaje")) is Resultado.PROCESSED
    assert {n.tipo for n in _notificaciones(sesiones).values()} == {esperado}


def test_modificacion_usa_datos_anteriores(despachador, transportes):
    anteriores = dict(TURNO, fecha="2025-03-07", hora="09:30")
    assert despachador.procesar(_evento(EVENTO_MODIFICADO, datos_anteriores=anteriores)) is Resultado.PROCESSED
    contenido = transportes[CanalNotificacion.EMAIL].enviados[0][2]
    assert "07/03/2025 a las 09:30" in contenido
    assert "10/03/2025 a las 14:00" in contenido


@pytest.mark.parametrize("tipo", [EVENTO_COMPLETADO, EVENTO_NO_SHOW])
def test_eventos_sin_notificacion(despachador, transportes, directorio, sesiones, tipo):
    assert despachador.procesar(_evento(tipo)) is Resultado.PROCESSED
    assert directorio.consultas == []
    assert _notificaciones(sesiones) == {}


def test_solo_canales_con_datos_de_contacto(despachador, directorio, transportes, sesiones):
    directorio.pacientes[1].pop("telefono")
    assert despachador.procesar(_evento()) is Resultado.PROCESSED
    assert set(_notificaciones(sesiones)) == {CanalNotificacion.EMAIL}
    assert transportes[CanalNotificacion.SMS].enviados == []


def test_falla_de_canal_queda_failed_y_se_reintenta_en_replay(despachador, transportes, sesiones):
    transportes[CanalNotificacion.SMS].falla = RuntimeError("gateway caído")

    assert despachador.procesar(_evento()) is Resultado.PROCESSED
    filas = _notificaciones(sesiones)
    assert filas[CanalNotificacion.EMAIL].estado is EstadoNotificacion.SENT
    assert filas[CanalNotificacion.SMS].estado is EstadoNotificacion.FAILED
    assert filas[CanalNotificacion.SMS].intentos == 1
    assert filas[CanalNotificacion.SMS].error == "gateway caído"

    transportes[CanalNotificacion.SMS].falla = None
    assert despachador.procesar(_evento()) is Resultado.PROCESSED

    filas = _notificaciones(sesiones)
    assert filas[CanalNotificacion.SMS].estado is EstadoNotificacion.SENT
    assert len(transportes[CanalNotificacion.EMAIL].enviados) == 1
    assert len(transportes[CanalNotificacion.SMS].enviados) == 1


def test_evento_duplicado_no_reenvia(despachador, transportes, sesiones):
    despachador.procesar(_evento())
    despachador.procesar(_evento())
    assert len(transportes[CanalNotificacion.EMAIL].enviados) == 1
    assert len(_notificaciones(sesiones)) == 2


def test_directorio_caido_es_reintentable(despachador, directorio, sesiones):
    directorio.caido = True
    assert despachador.procesar(_evento()) is Resultado.RETRYABLE_FAILURE
    assert _notificaciones(sesiones) == {}


def test_paciente_inexistente_es_venenoso(despachador):
    assert despachador.procesar(_evento(turno=dict(TURNO, paciente_id=99))) is Resultado.POISON_MESSAGE


@pytest.mark.parametrize(
    "payload",
    [
        "no es un dict",
        {"evento_id": "x"},
        {"evento_id": "x", "tipo": EVENTO_CREADO, "ocurrido_en": "ayer", "turno": TURNO},
        construir_evento("appointment.reprogramado", dict(TURNO), AHORA),
    ],
)
def test_payload_mal_formado_es_venenoso(despachador, payload):
    assert despachador.procesar(payload) is Resultado.POISON_MESSAGE


def test_variable_faltante_es_venenosa_y_no_escribe(despachador, transportes, sesiones):
    # La plantilla de cancelación por email exige motivo
    assert despachador.procesar(_evento(EVENTO_CANCELADO)) is Resultado.POISON_MESSAGE
    assert _notificaciones(sesiones) == {}
    assert transportes[CanalNotificacion.SMS].enviados == []


def test_sin_plantilla_activa_es_venenoso(despachador, sesiones):
    with sesiones.begin() as s:
        for p in s.scalars(select(Plantilla).where(Plantilla.tipo == TipoNotificacion.CONFIRMACION)):
            p.activa = False
    assert despachador.procesar(_evento()) is Resultado.POISON_MESSAGE


def test_evento_real_de_la_agenda(agenda, publicador, despachador, transportes):
    turno = agenda.crear_turno(paciente_id=1, medico_id=7, fecha=date(2025, 3, 10), hora=time(11, 0), dia_semana=1)
    agenda.cancelar_turno(turno["id"], "Viaje")

    for _, payload, _ in publicador.publicados:
        assert despachador.procesar(payload) is Resultado.PROCESSED

    contenido = transportes[CanalNotificacion.EMAIL].enviados[-1][2]
    assert "Motivo: Viaje" in contenido
