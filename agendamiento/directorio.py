"""
Consultas a los servicios externos de pacientes y médicos.

- 404 se traduce a NoEncontrado (el recurso no existe).
- Timeout, error de conexión, 429 y 5xx son transitorios: se reintentan
  con backoff exponencial acotado y, si persisten, ServicioNoDisponible.
- Otros 4xx son ServicioNoDisponible sin reintento.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import requests
from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import Settings
from .errores import NoEncontrado, ServicioNoDisponible

logger = logging.getLogger(__name__)


class Directorio(ABC):

    @abstractmethod
    def paciente(self, paciente_id: int) -> dict[str, Any]:
        pass

    @abstractmethod
    def medico(self, medico_id: int) -> dict[str, Any]:
        pass


class _ErrorTransitorio(Exception):
    pass


class DirectorioHTTP(Directorio):

    def __init__(
        self,
        pacientes_url: str,
        medicos_url: str,
        timeout: float = 5.0,
        max_intentos: int = 3,
        backoff: float = 0.2,
        http: requests.Session | None = None,
    ) -> None:
        self.pacientes_url = pacientes_url.rstrip("/")
        self.medicos_url = medicos_url.rstrip("/")
        self.timeout = timeout
        self.http = http or requests.Session()
        self._reintentos = Retrying(
            retry=retry_if_exception_type(_ErrorTransitorio),
            stop=stop_after_attempt(max(max_intentos, 1)),
            wait=wait_exponential(multiplier=backoff, max=2),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    @classmethod
    def desde_settings(cls, settings: Settings) -> "DirectorioHTTP":
        return cls(
            settings.pacientes_service_url,
            settings.medicos_service_url,
            timeout=settings.http_timeout_seconds,
            max_intentos=settings.http_max_intentos,
        )

    def paciente(self, paciente_id: int) -> dict[str, Any]:
        return self._obtener(f"{self.pacientes_url}/patients/{paciente_id}", "paciente", paciente_id)

    def medico(self, medico_id: int) -> dict[str, Any]:
        return self._obtener(f"{self.medicos_url}/doctors/{medico_id}", "médico", medico_id)

    def _obtener(self, url: str, recurso: str, recurso_id: int) -> dict[str, Any]:
        try:
            return self._reintentos(self._consultar, url, recurso, recurso_id)
        except _ErrorTransitorio as exc:
            logger.error("Servicio de %s no disponible (%s): %s", recurso, url, exc)
            raise ServicioNoDisponible(f"No se pudo consultar el {recurso} {recurso_id}: {exc}") from exc

    def _consultar(self, url: str, recurso: str, recurso_id: int) -> dict[str, Any]:
        try:
            r = self.http.get(url, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise _ErrorTransitorio(str(exc)) from exc

        if r.status_code == 404:
            raise NoEncontrado(f"El {recurso} {recurso_id} no existe")
        if r.status_code == 429 or r.status_code >= 500:
            raise _ErrorTransitorio(f"HTTP {r.status_code}")
        if r.status_code >= 400:
            raise ServicioNoDisponible(f"Respuesta inesperada del servicio de {recurso}: HTTP {r.status_code}")

        try:
            data = r.json()
        except ValueError as exc:
            raise ServicioNoDisponible(f"Respuesta no JSON del servicio de {recurso}") from exc

        # Los servicios responden {"success": ..., "data": {...}}
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            data = data["data"]
        if not isinstance(data, dict):
            raise ServicioNoDisponible(f"Respuesta inesperada del servicio de {recurso}")
        return data
