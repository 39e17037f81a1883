from __future__ import annotations

from datetime import date, datetime, time, timedelta

from sqlalchemy.orm import Session

from .almacen import AlmacenTurnos


class VerificadorDisponibilidad:
    """
    Decide si un slot (médico, fecha, hora) se puede reservar.

    Política de ventana: un turno existente a las t0 choca con t si
    |t - t0| < ventana. Con ventana = 0 solo choca la misma hora exacta.
    Los turnos CANCELLED y NO_SHOW no ocupan el slot.
    """

    def __init__(self, almacen: AlmacenTurnos, ventana_minutos: int = 30) -> None:
        self.almacen = almacen
        self.ventana = timedelta(minutes=max(ventana_minutos, 0))

    def limites(self, fecha: date, hora: time) -> tuple[time | None, time | None, bool]:
        """(desde, hasta, inclusivo) de la ventana de conflicto dentro del mismo día."""
        if not self.ventana:
            return hora, hora, True

        base = datetime.combine(fecha, hora)
        inicio = base - self.ventana
        fin = base + self.ventana
        desde = inicio.time() if inicio.date() == fecha else None
        hasta = fin.time() if fin.date() == fecha else None
        return desde, hasta, False

    def esta_disponible(
        self,
        session: Session,
        medico_id: int,
        fecha: date,
        hora: time,
        excluir_id: int | None = None,
    ) -> bool:
        desde, hasta, inclusivo = self.limites(fecha, hora)
        return not self.almacen.hay_superposicion(
            session,
            medico_id=medico_id,
            fecha=fecha,
            desde=desde,
            hasta=hasta,
            inclusivo=inclusivo,
            excluir_id=excluir_id,
        )
