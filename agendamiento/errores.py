"""
Taxonomía de errores del agendamiento.

Cada error lleva el status HTTP y un código estable que la API devuelve
en el campo ``error`` de la respuesta.
"""

from __future__ import annotations


class ErrorAgendamiento(Exception):
    status_code = 500
    codigo = "INTERNAL_ERROR"

    def __init__(self, mensaje: str) -> None:
        super().__init__(mensaje)
        self.mensaje = mensaje


class ErrorValidacion(ErrorAgendamiento):
    """Datos mal formados o fuera de política (horario, fecha pasada, día de la semana)."""

    status_code = 400
    codigo = "VALIDATION_ERROR"


class NoEncontrado(ErrorAgendamiento):
    status_code = 404
    codigo = "NOT_FOUND"


class TransicionInvalida(ErrorAgendamiento):
    status_code = 409
    codigo = "INVALID_TRANSITION"


class ConflictoDeHorario(ErrorAgendamiento):
    """Doble reserva, detectada por el chequeo previo o por el índice único."""

    status_code = 409
    codigo = "SLOT_CONFLICT"


class ServicioNoDisponible(ErrorAgendamiento):
    """El servicio de pacientes o de médicos no respondió tras los reintentos."""

    status_code = 503
    codigo = "UPSTREAM_UNAVAILABLE"


class VariableFaltante(ErrorAgendamiento):
    codigo = "MISSING_VARIABLE"

    def __init__(self, plantilla: str, faltantes: set[str]) -> None:
        super().__init__(
            f"Faltan variables para la plantilla '{plantilla}': {', '.join(sorted(faltantes))}"
        )
        self.plantilla = plantilla
        self.faltantes = frozenset(faltantes)


class PlantillaInvalida(ErrorAgendamiento):
    codigo = "INVALID_TEMPLATE"
