from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


class Base(DeclarativeBase):
    """Base ORM para todos los modelos."""
    pass


def crear_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Engine creado una sola vez al arrancar el proceso.
    Con SQLite se permite usar la conexión desde los hilos del servidor.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(
        database_url,
        echo=echo,              # True para ver las queries
        future=True,
        connect_args=connect_args,
    )


def crear_sesiones(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,
    )


def init_db(engine: Engine) -> None:
    """Crea las tablas si no existen."""
    # Importa los modelos para registrar las tablas en el metadata
    from . import auth_models, models, notificaciones_models  # noqa: F401

    Base.metadata.create_all(bind=engine)


@contextmanager
def unidad_de_trabajo(sesiones: sessionmaker[Session]) -> Iterator[Session]:
    """
    Context manager que delimita una transacción:
    - commit si todo ok
    - rollback ante excepciones
    - close siempre
    """
    session: Session = sesiones()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
