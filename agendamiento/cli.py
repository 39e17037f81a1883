from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date, time

from .config import Settings, load_settings
from .consumidor import ConsumidorEventos
from .db import crear_engine, crear_sesiones, init_db
from .despachador import DespachadorNotificaciones
from .directorio import DirectorioHTTP
from .errores import ErrorAgendamiento
from .eventos import crear_conexion
from .models import EstadoTurno
from .seed import seed_plantillas
from .services import Servicios
from .transportes import transportes_de_consola

logger = logging.getLogger(__name__)


def configurar_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _imprimir(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2))


def cmd_init(args: argparse.Namespace, settings: Settings) -> None:
    init_db(crear_engine(settings.database_url))
    engine_notif = crear_engine(settings.notificaciones_database_url)
    init_db(engine_notif)
    nuevas = seed_plantillas(crear_sesiones(engine_notif))
    print(f"DB inicializada. Plantillas nuevas: {nuevas}")


def cmd_serve(args: argparse.Namespace, settings: Settings) -> None:
    import uvicorn

    logger.info("API en %s:%s", args.host, args.port)
    uvicorn.run("agendamiento.api_main:app", host=args.host, port=args.port)


def cmd_relay(args: argparse.Namespace, sv: Servicios) -> None:
    """Republica los eventos que quedaron en el outbox sin publicar."""
    publicados = sv.agenda.relevo.relevar_pendientes(limite=args.limite)
    print(f"Eventos publicados: {publicados}")


def cmd_consume(args: argparse.Namespace, settings: Settings) -> None:
    engine = crear_engine(settings.notificaciones_database_url)
    init_db(engine)
    despachador = DespachadorNotificaciones(
        crear_sesiones(engine),
        DirectorioHTTP.desde_settings(settings),
        transportes_de_consola(),
    )
    with crear_conexion(settings) as conexion:
        ConsumidorEventos(conexion, settings, despachador, espera=args.espera).run()


def cmd_book(args: argparse.Namespace, sv: Servicios) -> None:
    fecha = date.fromisoformat(args.fecha)
    _imprimir(
        sv.agenda.crear_turno(
            paciente_id=args.paciente_id,
            medico_id=args.medico_id,
            fecha=fecha,
            hora=time.fromisoformat(args.hora),
            dia_semana=args.dia_semana if args.dia_semana is not None else fecha.isoweekday() % 7,
            motivo=args.motivo,
            observaciones=args.observaciones,
        )
    )


def cmd_confirm(args: argparse.Namespace, sv: Servicios) -> None:
    _imprimir(sv.agenda.confirmar_turno(args.turno_id))


def cmd_cancel(args: argparse.Namespace, sv: Servicios) -> None:
    _imprimir(sv.agenda.cancelar_turno(args.turno_id, args.motivo))


def cmd_complete(args: argparse.Namespace, sv: Servicios) -> None:
    _imprimir(sv.agenda.completar_turno(args.turno_id))


def cmd_no_show(args: argparse.Namespace, sv: Servicios) -> None:
    _imprimir(sv.agenda.marcar_no_show(args.turno_id))


def cmd_list(args: argparse.Namespace, sv: Servicios) -> None:
    turnos = sv.agenda.listar_turnos(
        estado=EstadoTurno(args.estado) if args.estado else None,
        medico_id=args.medico_id,
        paciente_id=args.paciente_id,
        fecha=date.fromisoformat(args.fecha) if args.fecha else None,
        fecha_desde=date.fromisoformat(args.desde) if args.desde else None,
        fecha_hasta=date.fromisoformat(args.hasta) if args.hasta else None,
    )
    for t in turnos:
        print(f"{t['id']} | {t['fecha']} {t['hora']} | médico {t['medico_id']} | paciente {t['paciente_id']} | {t['estado']}")


def cmd_history(args: argparse.Namespace, sv: Servicios) -> None:
    for h in sv.agenda.historial_turno(args.turno_id):
        print(f"{h['fecha_cambio']} | {h['tipo_cambio']} | {h['actor_id'] or '-'} | {h['descripcion']}")


def cmd_stats(args: argparse.Namespace, sv: Servicios) -> None:
    _imprimir(sv.agenda.estadisticas_cambios(date.fromisoformat(args.desde), date.fromisoformat(args.hasta)))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="agendamiento", description="CLI de agendamiento de turnos")
    sub = p.add_subparsers(required=True)

    # Comandos que reciben Settings
    p_init = sub.add_parser("init", help="Crea las tablas y carga las plantillas base")
    p_init.set_defaults(func=cmd_init, usa_servicios=False)

    p_consume = sub.add_parser("consume", help="Worker de notificaciones (bloqueante)")
    p_consume.add_argument("--espera", type=float, default=1.0, help="Segundos base entre reintentos")
    p_consume.set_defaults(func=cmd_consume, usa_servicios=False)

    p_serve = sub.add_parser("serve", help="Levanta la API HTTP")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.set_defaults(func=cmd_serve, usa_servicios=False)

    # Comandos que reciben Servicios
    p_relay = sub.add_parser("relay", help="Publica los eventos pendientes del outbox")
    p_relay.add_argument("--limite", type=int, default=100)
    p_relay.set_defaults(func=cmd_relay, usa_servicios=True)

    p_book = sub.add_parser("book", help="Reserva un turno")
    p_book.add_argument("--paciente-id", type=int, required=True)
    p_book.add_argument("--medico-id", type=int, required=True)
    p_book.add_argument("--fecha", required=True, help="YYYY-MM-DD")
    p_book.add_argument("--hora", required=True, help="HH:MM")
    p_book.add_argument("--dia-semana", type=int, default=None, help="0=domingo ... 6=sábado (por defecto se deriva de la fecha)")
    p_book.add_argument("--motivo", default=None)
    p_book.add_argument("--observaciones", default=None)
    p_book.set_defaults(func=cmd_book, usa_servicios=True)

    for nombre, func, ayuda in (
        ("confirm", cmd_confirm, "Confirma un turno pendiente"),
        ("complete", cmd_complete, "Marca un turno confirmado como completado"),
        ("no-show", cmd_no_show, "Marca un turno confirmado como no show"),
        ("history", cmd_history, "Historial de cambios de un turno"),
    ):
        sp = sub.add_parser(nombre, help=ayuda)
        sp.add_argument("turno_id", type=int)
        sp.set_defaults(func=func, usa_servicios=True)

    p_cancel = sub.add_parser("cancel", help="Cancela un turno")
    p_cancel.add_argument("turno_id", type=int)
    p_cancel.add_argument("--motivo", required=True)
    p_cancel.set_defaults(func=cmd_cancel, usa_servicios=True)

    p_list = sub.add_parser("list", help="Lista turnos")
    p_list.add_argument("--estado", choices=[e.value for e in EstadoTurno], default=None)
    p_list.add_argument("--medico-id", type=int, default=None)
    p_list.add_argument("--paciente-id", type=int, default=None)
    p_list.add_argument("--fecha", default=None, help="YYYY-MM-DD")
    p_list.add_argument("--desde", default=None, help="YYYY-MM-DD (inclusive)")
    p_list.add_argument("--hasta", default=None, help="YYYY-MM-DD (inclusive)")
    p_list.set_defaults(func=cmd_list, usa_servicios=True)

    p_stats = sub.add_parser("stats", help="Cambios por tipo en un rango de días")
    p_stats.add_argument("--desde", required=True, help="YYYY-MM-DD")
    p_stats.add_argument("--hasta", required=True, help="YYYY-MM-DD")
    p_stats.set_defaults(func=cmd_stats, usa_servicios=True)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = load_settings()
    configurar_logging(settings)

    if not args.usa_servicios:
        args.func(args, settings)
        return 0

    sv = Servicios.desde_settings(settings)
    try:
        args.func(args, sv)
    except ErrorAgendamiento as exc:
        print(f"Error [{exc.codigo}]: {exc.mensaje}", file=sys.stderr)
        return 1
    finally:
        sv.cerrar()
    return 0


if __name__ == "__main__":
    sys.exit(main())
