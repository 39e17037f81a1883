from __future__ import annotations

from unittest.mock import Mock

import pytest
from kombu import Connection

from agendamiento.consumidor import HEADER_REINTENTOS, ConsumidorEventos
from agendamiento.despachador import Resultado
from agendamiento.eventos import PublicadorKombu, cola_dead_letter, cola_notificaciones

EVENTO = {"evento_id": "evt-1", "tipo": "appointment.confirmed"}


def _consumidor(settings, resultado, conexion=None):
    despachador = Mock()
    despachador.procesar.return_value = resultado
    return ConsumidorEventos(conexion or Mock(), settings, despachador, espera=0), despachador


def _mensaje(headers=None) -> Mock:
    return Mock(headers=headers if headers is not None else {})


def test_procesado_hace_ack(settings):
    consumidor, despachador = _consumidor(settings, Resultado.PROCESSED)
    mensaje = _mensaje()
    consumidor.on_message(EVENTO, mensaje)
    despachador.procesar.assert_called_once_with(EVENTO)
    mensaje.ack.assert_called_once_with()
    mensaje.reject.assert_not_called()


def test_venenoso_va_a_dead_letter(settings):
    consumidor, _ = _consumidor(settings, Resultado.POISON_MESSAGE)
    mensaje = _mensaje()
    consumidor.on_message(EVENTO, mensaje)
    mensaje.reject.assert_called_once_with(requeue=False)
    mensaje.ack.assert_not_called()


def test_reintentable_se_reencola_con_contador(settings, monkeypatch):
    consumidor, _ = _consumidor(settings, Resultado.RETRYABLE_FAILURE)
    reencolados = []
    monkeypatch.setattr(consumidor, "reencolar", lambda body, message, n: reencolados.append((body, n)))

    mensaje = _mensaje({HEADER_REINTENTOS: 1})
    consumidor.on_message(EVENTO, mensaje)

    assert reencolados == [(EVENTO, 2)]
    mensaje.ack.assert_called_once_with()
    mensaje.reject.assert_not_called()


def test_reintentable_agotado_va_a_dead_letter(settings, monkeypatch):
    consumidor, _ = _consumidor(settings, Resultado.RETRYABLE_FAILURE)
    reencolar = Mock()
    monkeypatch.setattr(consumidor, "reencolar", reencolar)

    mensaje = _mensaje({HEADER_REINTENTOS: settings.consumidor_max_reintentos})
    consumidor.on_message(EVENTO, mensaje)

    reencolar.assert_not_called()
    mensaje.reject.assert_called_once_with(requeue=False)


def test_excepcion_inesperada_se_trata_como_reintentable(settings, monkeypatch):
    consumidor, despachador = _consumidor(settings, None)
    despachador.procesar.side_effect = RuntimeError("boom")
    reencolar = Mock()
    monkeypatch.setattr(consumidor, "reencolar", reencolar)

    consumidor.on_message(EVENTO, _mensaje(None))
    assert reencolar.call_args.args[2] == 1


def test_mensaje_ilegible_va_a_dead_letter(settings):
    consumidor, _ = _consumidor(settings, Resultado.PROCESSED)
    mensaje = _mensaje()
    consumidor.on_decode_error(mensaje, ValueError("no json"))
    mensaje.reject.assert_called_once_with(requeue=False)


@pytest.fixture
def conexion():
    with Connection("memory://") as c:
        yield c


def test_reencolar_en_el_broker(settings, conexion):
    cola = cola_notificaciones(settings)(conexion.default_channel)
    cola.declare()
    cola_dead_letter(settings)(conexion.default_channel).declare()
    PublicadorKombu(conexion, settings.eventos_exchange).publicar("appointment.confirmed", EVENTO, "evt-1")

    consumidor, _ = _consumidor(settings, Resultado.RETRYABLE_FAILURE, conexion)
    mensaje = cola.get()
    consumidor.on_message(mensaje.payload, mensaje)

    reintento = cola.get(no_ack=True)
    assert reintento.payload == EVENTO
    assert reintento.headers[HEADER_REINTENTOS] == 1
    assert cola.get(no_ack=True) is None
