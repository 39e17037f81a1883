from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Iterator

from kombu import Connection
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from .almacen import AlmacenTurnos, AlmacenTurnosSQL, CandadosAgenda, es_conflicto_de_slot
from .config import Settings
from .db import crear_engine, crear_sesiones, init_db, unidad_de_trabajo
from .directorio import Directorio, DirectorioHTTP
from .disponibilidad import VerificadorDisponibilidad
from .errores import ConflictoDeHorario, ErrorValidacion, NoEncontrado, TransicionInvalida
from .eventos import (
    ROUTING_KEYS,
    PublicadorEventos,
    PublicadorKombu,
    RelevoEventos,
    construir_evento,
    crear_conexion,
)
from .historial import RegistroHistorial
from .models import (
    DIAS_SEMANA,
    ESTADOS_TERMINALES,
    EstadoTurno,
    TipoCambio,
    Turno,
    dia_semana_de,
    historial_a_dict,
    turno_a_dict,
)

logger = logging.getLogger(__name__)


# =========================
# Reglas de transición
# =========================
@dataclass(frozen=True)
class Transicion:
    origenes: frozenset[EstadoTurno]
    destino: EstadoTurno
    tipo_cambio: TipoCambio
    rechazo: str


TRANSICIONES: dict[str, Transicion] = {
    "confirmar": Transicion(
        frozenset({EstadoTurno.PENDING}),
        EstadoTurno.CONFIRMED,
        TipoCambio.CONFIRMED,
        "Solo se pueden confirmar turnos pendientes",
    ),
    "cancelar": Transicion(
        frozenset({EstadoTurno.PENDING, EstadoTurno.CONFIRMED}),
        EstadoTurno.CANCELLED,
        TipoCambio.CANCELLED,
        "Solo se pueden cancelar turnos pendientes o confirmados",
    ),
    "completar": Transicion(
        frozenset({EstadoTurno.CONFIRMED}),
        EstadoTurno.COMPLETED,
        TipoCambio.COMPLETED,
        "Solo se pueden completar turnos confirmados",
    ),
    "no_show": Transicion(
        frozenset({EstadoTurno.CONFIRMED}),
        EstadoTurno.NO_SHOW,
        TipoCambio.NO_SHOW,
        "Solo se pueden marcar como no show turnos confirmados",
    ),
}

ESTADOS_MODIFICABLES = frozenset(EstadoTurno) - ESTADOS_TERMINALES

CAMPOS_MODIFICABLES = frozenset(
    {"paciente_id", "medico_id", "fecha", "hora", "dia_semana", "motivo", "observaciones"}
)

# Se pueden vaciar enviando None
CAMPOS_ANULABLES = frozenset({"motivo", "observaciones"})

LIMITE_MAXIMO_PAGINA = 100


def _validar_rango(desde: date | None, hasta: date | None) -> None:
    if desde is not None and hasta is not None and desde > hasta:
        raise ErrorValidacion("La fecha de inicio debe ser anterior o igual a la fecha de fin")


def _limites_de_dias(desde: date | None, hasta: date | None) -> tuple[datetime | None, datetime | None]:
    """Rango de días inclusivo como [inicio, fin) en datetime."""
    return (
        datetime.combine(desde, time.min) if desde is not None else None,
        datetime.combine(hasta + timedelta(days=1), time.min) if hasta is not None else None,
    )


# =========================
# Máquina de estados
# =========================
class AgendaTurnos:
    """
    Casos de uso del ciclo de vida de un turno.

    Cada operación valida, muta el turno, escribe el historial y encola el
    evento en una única transacción; después del commit intenta publicar
    el evento (best-effort, las fallas quedan en el outbox).
    """

    def __init__(
        self,
        sesiones: sessionmaker[Session],
        directorio: Directorio,
        relevo: RelevoEventos,
        almacen: AlmacenTurnos | None = None,
        historial: RegistroHistorial | None = None,
        disponibilidad: VerificadorDisponibilidad | None = None,
        hora_apertura: time = time(8, 0),
        hora_cierre: time = time(18, 0),
        reloj: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.sesiones = sesiones
        self.directorio = directorio
        self.relevo = relevo
        self.almacen = almacen or AlmacenTurnosSQL()
        self.historial = historial or RegistroHistorial()
        self.disponibilidad = disponibilidad or VerificadorDisponibilidad(self.almacen)
        self.hora_apertura = hora_apertura
        self.hora_cierre = hora_cierre
        self.reloj = reloj
        self._candados = CandadosAgenda()

    # ---------- escritura ----------

    def crear_turno(
        self,
        paciente_id: int,
        medico_id: int,
        fecha: date,
        hora: time,
        dia_semana: int,
        motivo: str | None = None,
        observaciones: str | None = None,
        actor_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Reserva un turno en PENDING.
        - valida fecha/hora/día de la semana contra la política de la clínica
        - verifica paciente y médico en los servicios externos
        - chequea disponibilidad bajo lock de la agenda del médico
        """
        self._validar_slot(fecha, hora, dia_semana)
        self.directorio.paciente(paciente_id)
        self.directorio.medico(medico_id)

        with self._candados.tomar((medico_id, fecha)):
            with self._transaccion() as s:
                self.almacen.bloquear_agenda(s, medico_id, fecha)
                if not self.disponibilidad.esta_disponible(s, medico_id, fecha, hora):
                    raise ConflictoDeHorario(
                        f"El médico {medico_id} no está disponible el {fecha.isoformat()} a las {hora:%H:%M}"
                    )

                ahora = self.reloj()
                turno = Turno(
                    paciente_id=paciente_id,
                    medico_id=medico_id,
                    fecha=fecha,
                    hora=hora,
                    dia_semana=dia_semana,
                    estado=EstadoTurno.PENDING,
                    motivo=motivo,
                    observaciones=observaciones,
                    creado_en=ahora,
                    actualizado_en=ahora,
                )
                self.almacen.guardar(s, turno)
                despues = turno_a_dict(turno)
                self.historial.registrar(
                    s, turno.id, TipoCambio.CREATED, "Turno creado", actor_id, None, despues, ahora
                )
                evento_id = self._encolar(s, TipoCambio.CREATED, despues, ahora)

        logger.info("Turno %s creado (médico %s, %s %s)", despues["id"], medico_id, fecha, despues["hora"])
        self._publicar(evento_id)
        return despues

    def modificar_turno(
        self,
        turno_id: int,
        cambios: dict[str, Any],
        actor_id: str | None = None,
    ) -> dict[str, Any]:
        desconocidos = set(cambios) - CAMPOS_MODIFICABLES
        if desconocidos:
            raise ErrorValidacion(f"Campos no modificables: {', '.join(sorted(desconocidos))}")
        nulos = {k for k, v in cambios.items() if v is None} - CAMPOS_ANULABLES
        if nulos:
            raise ErrorValidacion(f"Campos que no admiten null: {', '.join(sorted(nulos))}")
        if not cambios:
            raise ErrorValidacion("No hay cambios para aplicar")

        actual = self.obtener_turno(turno_id)
        self._exigir_modificable(EstadoTurno(actual["estado"]))

        medico_id = cambios.get("medico_id", actual["medico_id"])
        fecha = cambios.get("fecha", date.fromisoformat(actual["fecha"]))
        hora = cambios.get("hora", time.fromisoformat(actual["hora"]))
        cambia_slot = bool({"medico_id", "fecha", "hora"} & set(cambios))

        if {"fecha", "hora", "dia_semana"} & set(cambios):
            self._validar_slot(fecha, hora, cambios.get("dia_semana", dia_semana_de(fecha)))
        if cambios.get("paciente_id", actual["paciente_id"]) != actual["paciente_id"]:
            self.directorio.paciente(cambios["paciente_id"])
        if medico_id != actual["medico_id"]:
            self.directorio.medico(medico_id)

        origen = (actual["medico_id"], date.fromisoformat(actual["fecha"]))
        with self._candados.tomar(origen, (medico_id, fecha)):
            with self._transaccion() as s:
                turno = self._obtener(s, turno_id)
                # el estado pudo cambiar desde la lectura anterior
                self._exigir_modificable(turno.estado)
                antes = turno_a_dict(turno)

                if cambia_slot:
                    self.almacen.bloquear_agenda(s, medico_id, fecha)
                    if not self.disponibilidad.esta_disponible(s, medico_id, fecha, hora, excluir_id=turno.id):
                        raise ConflictoDeHorario(
                            f"El médico {medico_id} no está disponible el {fecha.isoformat()} a las {hora:%H:%M}"
                        )

                for campo, valor in cambios.items():
                    if campo != "dia_semana":
                        setattr(turno, campo, valor)
                turno.dia_semana = dia_semana_de(turno.fecha)
                ahora = self.reloj()
                turno.actualizado_en = ahora
                self.almacen.guardar(s, turno)

                despues = turno_a_dict(turno)
                self.historial.registrar(
                    s,
                    turno.id,
                    TipoCambio.MODIFIED,
                    f"Turno modificado: {', '.join(sorted(cambios))}",
                    actor_id,
                    antes,
                    despues,
                    ahora,
                )
                evento_id = self._encolar(s, TipoCambio.MODIFIED, despues, ahora, datos_anteriores=antes)

        logger.info("Turno %s modificado (%s)", turno_id, ", ".join(sorted(cambios)))
        self._publicar(evento_id)
        return despues

    def cancelar_turno(self, turno_id: int, motivo: str, actor_id: str | None = None) -> dict[str, Any]:
        motivo = (motivo or "").strip()
        if not motivo:
            raise ErrorValidacion("El motivo de cancelación es requerido")
        return self._transicionar(turno_id, "cancelar", actor_id, f"Turno cancelado: {motivo}", motivo=motivo)

    def confirmar_turno(self, turno_id: int, actor_id: str | None = None) -> dict[str, Any]:
        return self._transicionar(turno_id, "confirmar", actor_id, "Turno confirmado")

    def completar_turno(self, turno_id: int, actor_id: str | None = None) -> dict[str, Any]:
        return self._transicionar(turno_id, "completar", actor_id, "Turno marcado como completado")

    def marcar_no_show(self, turno_id: int, actor_id: str | None = None) -> dict[str, Any]:
        return self._transicionar(turno_id, "no_show", actor_id, "Turno marcado como no show")

    # ---------- lectura ----------

    def obtener_turno(self, turno_id: int) -> dict[str, Any]:
        with self._transaccion() as s:
            return turno_a_dict(self._obtener(s, turno_id))

    def listar_turnos(
        self,
        estado: EstadoTurno | None = None,
        medico_id: int | None = None,
        paciente_id: int | None = None,
        fecha: date | None = None,
        fecha_desde: date | None = None,
        fecha_hasta: date | None = None,
    ) -> list[dict[str, Any]]:
        _validar_rango(fecha_desde, fecha_hasta)
        with self._transaccion() as s:
            turnos = self.almacen.listar(
                s,
                estado=estado,
                medico_id=medico_id,
                paciente_id=paciente_id,
                fecha=fecha,
                fecha_desde=fecha_desde,
                fecha_hasta=fecha_hasta,
            )
            return [turno_a_dict(t) for t in turnos]

    def historial_turno(self, turno_id: int) -> list[dict[str, Any]]:
        """Historial del turno, del cambio más reciente al más antiguo."""
        with self._transaccion() as s:
            self._obtener(s, turno_id)
            return [historial_a_dict(h) for h in self.almacen.historial(s, turno_id)]

    def buscar_historial(
        self,
        turno_id: int | None = None,
        tipo: TipoCambio | None = None,
        fecha_inicio: date | None = None,
        fecha_fin: date | None = None,
        pagina: int = 1,
        limite: int = 10,
    ) -> dict[str, Any]:
        """
        Historial de todos los turnos, paginado y del más reciente al más antiguo.
        fecha_inicio / fecha_fin filtran por día del cambio (ambos inclusive).
        """
        if pagina < 1:
            raise ErrorValidacion("La página debe ser mayor o igual a 1")
        if not 1 <= limite <= LIMITE_MAXIMO_PAGINA:
            raise ErrorValidacion(f"El límite debe estar entre 1 y {LIMITE_MAXIMO_PAGINA}")
        _validar_rango(fecha_inicio, fecha_fin)

        desde, hasta = _limites_de_dias(fecha_inicio, fecha_fin)
        with self._transaccion() as s:
            items, total = self.almacen.buscar_historial(
                s,
                turno_id=turno_id,
                tipo=tipo,
                desde=desde,
                hasta=hasta,
                offset=(pagina - 1) * limite,
                limite=limite,
            )
            return {
                "items": [historial_a_dict(h) for h in items],
                "total": total,
                "pagina": pagina,
                "limite": limite,
                "paginas": -(-total // limite),
            }

    def estadisticas_cambios(self, fecha_inicio: date, fecha_fin: date) -> dict[str, Any]:
        """Cantidad de cambios por tipo en el rango de días (ambos inclusive)."""
        _validar_rango(fecha_inicio, fecha_fin)
        desde, hasta = _limites_de_dias(fecha_inicio, fecha_fin)
        with self._transaccion() as s:
            conteo = self.almacen.contar_cambios(s, desde, hasta)

        por_tipo = {t.value: conteo.get(t, 0) for t in TipoCambio}
        return {
            "fecha_inicio": fecha_inicio.isoformat(),
            "fecha_fin": fecha_fin.isoformat(),
            "total": sum(por_tipo.values()),
            "por_tipo": por_tipo,
        }

    def consultar_disponibilidad(self, medico_id: int, fecha: date, hora: time) -> bool:
        with self._transaccion() as s:
            return self.disponibilidad.esta_disponible(s, medico_id, fecha, hora)

    # ---------- internos ----------

    def _transicionar(
        self,
        turno_id: int,
        accion: str,
        actor_id: str | None,
        descripcion: str,
        motivo: str | None = None,
    ) -> dict[str, Any]:
        regla = TRANSICIONES[accion]
        actual = self.obtener_turno(turno_id)
        # Serializa con crear/modificar sobre la misma agenda; si el turno se
        # movió de agenda entre la lectura y el lock, lo detecta la versión
        with self._candados.tomar((actual["medico_id"], date.fromisoformat(actual["fecha"]))):
            with self._transaccion() as s:
                turno = self._obtener(s, turno_id)
                if turno.estado not in regla.origenes:
                    raise TransicionInvalida(f"{regla.rechazo} (turno {turno_id} en estado {turno.estado.value})")

                antes = turno_a_dict(turno)
                turno.estado = regla.destino
                if regla.destino is EstadoTurno.CANCELLED:
                    turno.motivo_cancelacion = motivo
                ahora = self.reloj()
                turno.actualizado_en = ahora
                self.almacen.guardar(s, turno)

                despues = turno_a_dict(turno)
                self.historial.registrar(s, turno.id, regla.tipo_cambio, descripcion, actor_id, antes, despues, ahora)
                metadata = {"motivo": motivo} if motivo is not None else {}
                evento_id = self._encolar(s, regla.tipo_cambio, despues, ahora, **metadata)

        logger.info("Turno %s: %s -> %s", turno_id, antes["estado"], despues["estado"])
        self._publicar(evento_id)
        return despues

    def _validar_slot(self, fecha: date, hora: time, dia_semana: int) -> None:
        if hora.second or hora.microsecond:
            raise ErrorValidacion("La hora del turno debe tener formato HH:MM")
        if not 0 <= dia_semana <= 6:
            raise ErrorValidacion("El día de la semana debe estar entre 0 y 6")
        if datetime.combine(fecha, hora) <= self.reloj():
            raise ErrorValidacion("La fecha y hora del turno deben ser futuras")

        calculado = dia_semana_de(fecha)
        if calculado != dia_semana:
            raise ErrorValidacion(
                f"La fecha {fecha.isoformat()} es {DIAS_SEMANA[calculado]}, no {DIAS_SEMANA[dia_semana]}"
            )
        # Domingo no laborable
        if calculado == 0:
            raise ErrorValidacion("No se atiende los domingos")
        if not self.hora_apertura <= hora <= self.hora_cierre:
            raise ErrorValidacion(
                f"La hora debe estar entre {self.hora_apertura:%H:%M} y {self.hora_cierre:%H:%M}"
            )

    def _exigir_modificable(self, estado: EstadoTurno) -> None:
        if estado not in ESTADOS_MODIFICABLES:
            raise TransicionInvalida(f"No se puede modificar un turno en estado {estado.value}")

    def _obtener(self, s: Session, turno_id: int) -> Turno:
        turno = self.almacen.obtener(s, turno_id, bloquear=True)
        if turno is None:
            raise NoEncontrado(f"Turno con ID {turno_id} no encontrado")
        return turno

    def _encolar(self, s: Session, tipo: TipoCambio, turno: dict[str, Any], ahora: datetime, **metadata: Any) -> str:
        routing_key = ROUTING_KEYS[tipo]
        return self.relevo.encolar(s, routing_key, construir_evento(routing_key, turno, ahora, **metadata))

    def _publicar(self, evento_id: str) -> None:
        # Después del commit: una falla acá no deshace el turno
        try:
            self.relevo.despachar([evento_id])
        except Exception:
            logger.exception("No se pudo relevar el evento %s; queda pendiente en el outbox", evento_id)

    @contextmanager
    def _transaccion(self) -> Iterator[Session]:
        try:
            with unidad_de_trabajo(self.sesiones) as s:
                yield s
        except IntegrityError as exc:
            if es_conflicto_de_slot(exc):
                raise ConflictoDeHorario("El horario ya fue reservado para ese médico") from exc
            raise
        except StaleDataError as exc:
            raise TransicionInvalida("El turno cambió durante la operación; volvé a consultarlo") from exc


def construir_agenda(
    settings: Settings,
    sesiones: sessionmaker[Session],
    directorio: Directorio,
    publicador: PublicadorEventos,
    reloj: Callable[[], datetime] = datetime.now,
) -> AgendaTurnos:
    almacen = AlmacenTurnosSQL()
    return AgendaTurnos(
        sesiones=sesiones,
        directorio=directorio,
        relevo=RelevoEventos(sesiones, publicador),
        almacen=almacen,
        disponibilidad=VerificadorDisponibilidad(almacen, settings.ventana_conflicto_minutos),
        hora_apertura=settings.hora_apertura,
        hora_cierre=settings.hora_cierre,
        reloj=reloj,
    )


# =========================
# Composición del proceso
# =========================
@dataclass
class Servicios:
    """Dependencias construidas una sola vez al arrancar (API o CLI)."""

    settings: Settings
    sesiones: sessionmaker[Session]
    agenda: AgendaTurnos
    conexion: Connection | None = None

    @classmethod
    def desde_settings(cls, settings: Settings) -> "Servicios":
        engine = crear_engine(settings.database_url)
        init_db(engine)
        sesiones = crear_sesiones(engine)
        conexion = crear_conexion(settings)
        publicador = PublicadorKombu(conexion, settings.eventos_exchange, settings.publicacion_max_intentos)
        agenda = construir_agenda(settings, sesiones, DirectorioHTTP.desde_settings(settings), publicador)
        return cls(settings=settings, sesiones=sesiones, agenda=agenda, conexion=conexion)

    def cerrar(self) -> None:
        if self.conexion is not None:
            self.conexion.release()
