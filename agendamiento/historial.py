from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from .models import HistorialCambio, TipoCambio, ahora_utc

logger = logging.getLogger(__name__)


class RegistroHistorial:
    """
    Escribe el historial de cambios de los turnos.

    El registro se agrega a la sesión del llamador: se confirma o se
    descarta junto con el cambio que documenta. No existen operaciones
    de actualización ni de borrado.
    """

    def registrar(
        self,
        session: Session,
        turno_id: int,
        tipo_cambio: TipoCambio,
        descripcion: str,
        actor_id: str | None,
        antes: dict[str, Any] | None,
        despues: dict[str, Any] | None,
        fecha_cambio: datetime | None = None,
    ) -> HistorialCambio:
        registro = HistorialCambio(
            turno_id=turno_id,
            tipo_cambio=tipo_cambio,
            descripcion=descripcion,
            actor_id=actor_id,
            datos_anteriores=antes,
            datos_nuevos=despues,
            fecha_cambio=fecha_cambio or ahora_utc(),
        )
        session.add(registro)
        session.flush()
        logger.debug("Historial %s registrado para turno %s", tipo_cambio.value, turno_id)
        return registro
