from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .db import unidad_de_trabajo
from .notificaciones_models import CanalNotificacion, Plantilla, TipoNotificacion
from .plantillas import PlantillaNotificacion

EMAIL = CanalNotificacion.EMAIL
SMS = CanalNotificacion.SMS

PLANTILLAS_BASE = [
    PlantillaNotificacion(
        nombre="Agendamiento de Cita - Email",
        tipo=TipoNotificacion.AGENDAMIENTO,
        canal=EMAIL,
        asunto="Turno reservado - {{ fecha }}",
        contenido=(
            "Estimado/a {{ paciente_nombre }},\n\n"
            "Su turno fue reservado para el {{ fecha }} a las {{ hora }} "
            "con Dr. {{ medico_nombre }} ({{ especialidad }}).\n"
            "Le avisaremos cuando quede confirmado.\n\n"
            "Centro Médico"
        ),
        variables_requeridas=frozenset({"paciente_nombre", "fecha", "hora", "medico_nombre", "especialidad"}),
    ),
    PlantillaNotificacion(
        nombre="Agendamiento de Cita - SMS",
        tipo=TipoNotificacion.AGENDAMIENTO,
        canal=SMS,
        contenido=(
            "Hola {{ paciente_nombre }}! Su turno quedó reservado para el {{ fecha }} "
            "a las {{ hora }} con Dr. {{ medico_nombre }}. Centro Médico."
        ),
        variables_requeridas=frozenset({"paciente_nombre", "fecha", "hora", "medico_nombre"}),
    ),
    PlantillaNotificacion(
        nombre="Confirmación de Cita - Email",
        tipo=TipoNotificacion.CONFIRMACION,
        canal=EMAIL,
        asunto="Confirmación de Cita Médica - {{ fecha }}",
        contenido=(
            "Estimado/a {{ paciente_nombre }},\n\n"
            "Su cita médica ha sido confirmada.\n"
            "Fecha: {{ fecha }}\nHora: {{ hora }}\n"
            "Médico: Dr. {{ medico_nombre }}\nEspecialidad: {{ especialidad }}\n\n"
            "Por favor, llegue 15 minutos antes de su hora programada.\n\n"
            "Centro Médico"
        ),
        variables_requeridas=frozenset({"paciente_nombre", "fecha", "hora", "medico_nombre", "especialidad"}),
    ),
    PlantillaNotificacion(
        nombre="Confirmación de Cita - SMS",
        tipo=TipoNotificacion.CONFIRMACION,
        canal=SMS,
        contenido=(
            "Hola {{ paciente_nombre }}! Su cita médica ha sido confirmada para el {{ fecha }} "
            "a las {{ hora }} con Dr. {{ medico_nombre }} ({{ especialidad }}). "
            "Llegue 15 min antes. Centro Médico."
        ),
        variables_requeridas=frozenset({"paciente_nombre", "fecha", "hora", "medico_nombre", "especialidad"}),
    ),
    PlantillaNotificacion(
        nombre="Modificación de Cita - Email",
        tipo=TipoNotificacion.MODIFICACION,
        canal=EMAIL,
        asunto="Modificación de Cita Médica",
        contenido=(
            "Estimado/a {{ paciente_nombre }},\n\n"
            "Su cita médica ha sido modificada.\n"
            "Fecha anterior: {{ fecha_anterior }} a las {{ hora_anterior }}\n"
            "Nueva fecha: {{ fecha_nueva }} a las {{ hora_nueva }}\n"
            "Médico: Dr. {{ medico_nombre }}\n\n"
            "Centro Médico"
        ),
        variables_requeridas=frozenset(
            {"paciente_nombre", "fecha_anterior", "hora_anterior", "fecha_nueva", "hora_nueva", "medico_nombre"}
        ),
    ),
    PlantillaNotificacion(
        nombre="Modificación de Cita - SMS",
        tipo=TipoNotificacion.MODIFICACION,
        canal=SMS,
        contenido=(
            "Hola {{ paciente_nombre }}! Su cita médica ha sido modificada para el {{ fecha_nueva }} "
            "a las {{ hora_nueva }} con Dr. {{ medico_nombre }}. Centro Médico."
        ),
        variables_requeridas=frozenset({"paciente_nombre", "fecha_nueva", "hora_nueva", "medico_nombre"}),
    ),
    PlantillaNotificacion(
        nombre="Cancelación de Cita - Email",
        tipo=TipoNotificacion.CANCELACION,
        canal=EMAIL,
        asunto="Cancelación de Cita Médica",
        contenido=(
            "Estimado/a {{ paciente_nombre }},\n\n"
            "Su cita médica del {{ fecha }} a las {{ hora }} con Dr. {{ medico_nombre }} ha sido cancelada.\n"
            "Motivo: {{ motivo }}\n\n"
            "Para reagendar su cita, por favor contáctenos.\n\n"
            "Centro Médico"
        ),
        variables_requeridas=frozenset({"paciente_nombre", "fecha", "hora", "medico_nombre", "motivo"}),
    ),
    PlantillaNotificacion(
        nombre="Cancelación de Cita - SMS",
        tipo=TipoNotificacion.CANCELACION,
        canal=SMS,
        contenido=(
            "Hola {{ paciente_nombre }}! Su cita médica del {{ fecha }} a las {{ hora }} "
            "con Dr. {{ medico_nombre }} ha sido cancelada. Para reagendar contáctenos. Centro Médico."
        ),
        variables_requeridas=frozenset({"paciente_nombre", "fecha", "hora", "medico_nombre"}),
    ),
]


def seed_plantillas(sesiones: sessionmaker[Session]) -> int:
    """
    Carga las plantillas base (idempotente): solo inserta las que no
    existen por nombre. Devuelve cuántas insertó.
    """
    nuevas = 0
    with unidad_de_trabajo(sesiones) as s:
        for p in PLANTILLAS_BASE:
            if s.execute(select(Plantilla).where(Plantilla.nombre == p.nombre)).scalar_one_or_none() is not None:
                continue
            s.add(
                Plantilla(
                    nombre=p.nombre,
                    tipo=p.tipo,
                    canal=p.canal,
                    asunto=p.asunto,
                    contenido=p.contenido,
                    variables=sorted(p.variables_requeridas),
                    activa=True,
                )
            )
            nuevas += 1
    return nuevas
