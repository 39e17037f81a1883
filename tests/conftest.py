"""
Fixtures compartidas: SQLite en archivo temporal, directorio falso,
publicador en memoria y reloj fijo (sábado 2025-03-01 10:00).
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import pytest
from fastapi.testclient import TestClient

from agendamiento.api_main import crear_app
from agendamiento.config import Settings
from agendamiento.db import crear_engine, crear_sesiones, init_db
from agendamiento.directorio import Directorio
from agendamiento.errores import NoEncontrado, ServicioNoDisponible
from agendamiento.eventos import PublicadorEventos
from agendamiento.services import Servicios, construir_agenda

AHORA = datetime(2025, 3, 1, 10, 0)

PACIENTE = {
    "id": 1,
    "nombre": "Ana",
    "apellido": "Pérez",
    "email": "ana@example.com",
    "telefono": "+5491155550001",
}
MEDICO = {"id": 7, "nombre": "Juan", "apellido": "García", "especialidad": "Cardiología"}


class DirectorioFalso(Directorio):

    def __init__(self) -> None:
        self.pacientes: dict[int, dict[str, Any]] = {1: dict(PACIENTE), 2: {"id": 2, "nombre": "Luis", "apellido": "Díaz"}}
        self.medicos: dict[int, dict[str, Any]] = {7: dict(MEDICO), 8: {"id": 8, "nombre": "Marta", "apellido": "Ruiz", "especialidad": "Clínica"}}
        self.caido = False
        self.consultas: list[tuple[str, int]] = []

    def _buscar(self, tabla: dict[int, dict[str, Any]], recurso: str, recurso_id: int) -> dict[str, Any]:
        self.consultas.append((recurso, recurso_id))
        if self.caido:
            raise ServicioNoDisponible(f"Servicio de {recurso} caído")
        if recurso_id not in tabla:
            raise NoEncontrado(f"El {recurso} {recurso_id} no existe")
        return tabla[recurso_id]

    def paciente(self, paciente_id: int) -> dict[str, Any]:
        return self._buscar(self.pacientes, "paciente", paciente_id)

    def medico(self, medico_id: int) -> dict[str, Any]:
        return self._buscar(self.medicos, "médico", medico_id)


class PublicadorEnMemoria(PublicadorEventos):

    def __init__(self) -> None:
        self.publicados: list[tuple[str, dict[str, Any], str]] = []
        self.falla = False

    def publicar(self, routing_key: str, payload: dict[str, Any], evento_id: str) -> None:
        if self.falla:
            raise ConnectionError("broker no disponible")
        self.publicados.append((routing_key, payload, evento_id))

    @property
    def routing_keys(self) -> list[str]:
        return [rk for rk, _, _ in self.publicados]


@pytest.fixture
def settings(tmp_path) -> Settings:
    sufijo = uuid.uuid4().hex[:8]
    url = f"sqlite:///{tmp_path / 'agendamiento.sqlite'}"
    return Settings(
        database_url=url,
        notificaciones_database_url=url,
        broker_url="memory://",
        eventos_exchange=f"eventos.turnos.{sufijo}",
        notificaciones_queue=f"notificaciones.turnos.{sufijo}",
        jwt_secret="secreto-de-test",
        consumidor_max_reintentos=2,
    )


@pytest.fixture
def sesiones(settings):
    engine = crear_engine(settings.database_url)
    init_db(engine)
    yield crear_sesiones(engine)
    engine.dispose()


@pytest.fixture
def directorio() -> DirectorioFalso:
    return DirectorioFalso()


@pytest.fixture
def publicador() -> PublicadorEnMemoria:
    return PublicadorEnMemoria()


@pytest.fixture
def agenda(settings, sesiones, directorio, publicador):
    return construir_agenda(settings, sesiones, directorio, publicador, reloj=lambda: AHORA)


@pytest.fixture
def client(settings, sesiones, agenda):
    app = crear_app(Servicios(settings=settings, sesiones=sesiones, agenda=agenda))
    with TestClient(app) as c:
        yield c
