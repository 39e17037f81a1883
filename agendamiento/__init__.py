"""
Agendamiento de turnos médicos: ciclo de vida del turno y notificaciones.

Estructura:
- config.py        : Settings desde variables de entorno (.env)
- db.py            : engine, sesiones y unidad de trabajo SQLAlchemy
- models.py        : Turno, HistorialCambio, EventoSaliente (outbox)
- almacen.py       : puerto de persistencia de turnos y adaptador SQL
- disponibilidad.py: política de conflicto de horarios
- historial.py     : escritura del historial inmutable
- services.py      : máquina de estados del turno (AgendaTurnos)
- eventos.py       : topología kombu, publicador y relevo del outbox
- directorio.py    : consultas HTTP a pacientes y médicos
- plantillas.py    : renderizado Jinja2 de plantillas de notificación
- despachador.py   : evento -> notificaciones por canal
- consumidor.py    : worker kombu (ack / reintento / dead-letter)
- api_main.py      : API FastAPI
- cli.py           : comandos de operación (init, relay, consume, ...)
"""
