"""
Transportes de canal (EMAIL, SMS).

Los clientes SMTP / gateway SMS reales quedan fuera de este paquete; el
transporte de consola solo deja el mensaje en el log y sirve para desarrollo.
Un transporte señala la falla de envío lanzando una excepción.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from .notificaciones_models import CanalNotificacion

logger = logging.getLogger(__name__)


class TransporteCanal(ABC):

    @abstractmethod
    def enviar(self, destinatario: str, asunto: str | None, contenido: str) -> None:
        pass


class TransporteConsola(TransporteCanal):

    def __init__(self, canal: CanalNotificacion) -> None:
        self.canal = canal

    def enviar(self, destinatario: str, asunto: str | None, contenido: str) -> None:
        if self.canal is CanalNotificacion.EMAIL:
            logger.info("[EMAIL] para=%s asunto=%s\n%s", destinatario, asunto, contenido)
        else:
            logger.info("[SMS] para=%s %s", destinatario, contenido)


def transportes_de_consola() -> dict[CanalNotificacion, TransporteCanal]:
    return {canal: TransporteConsola(canal) for canal in CanalNotificacion}
