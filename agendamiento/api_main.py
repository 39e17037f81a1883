from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date, time
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel, Field

from .auth_models import Usuario
from .auth_security import create_access_token, get_subject
from .auth_service import autenticar, crear_usuario, obtener_usuario
from .config import load_settings
from .errores import ErrorAgendamiento
from .models import EstadoTurno, TipoCambio
from .services import Servicios

# OAuth2 Bearer opcional: sin token el cambio queda sin actor en el historial
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


# Schemas Auth

class RegisterIn(BaseModel):
    username: str
    password: str


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"


class MeOut(BaseModel):
    id: str
    username: str


# Schemas Turnos

class TurnoCrearIn(BaseModel):
    paciente_id: int = Field(..., gt=0)
    medico_id: int = Field(..., gt=0)
    fecha: date
    hora: time
    dia_semana: int = Field(..., ge=0, le=6)
    motivo: str | None = Field(None, max_length=200)
    observaciones: str | None = Field(None, max_length=500)


class TurnoModificarIn(BaseModel):
    # Solo se aplican los campos enviados; motivo y observaciones admiten null para vaciarlos
    paciente_id: int | None = Field(None, gt=0)
    medico_id: int | None = Field(None, gt=0)
    fecha: date | None = None
    hora: time | None = None
    dia_semana: int | None = Field(None, ge=0, le=6)
    motivo: str | None = Field(None, max_length=200)
    observaciones: str | None = Field(None, max_length=500)


class CancelarIn(BaseModel):
    motivo: str = Field(..., min_length=1, max_length=200)


# Dependencias

def get_servicios(request: Request) -> Servicios:
    return request.app.state.servicios


def _usuario_de_token(token: str, sv: Servicios) -> Usuario:
    # elimina espacios / comillas accidentales
    token = token.strip().strip('"').strip("'")

    user_id = get_subject(sv.settings, token)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token inválido")

    u = obtener_usuario(sv.sesiones, user_id)
    if not u:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Usuario inválido")
    return u


def get_actor_id(
    token: str | None = Depends(oauth2_scheme),
    sv: Servicios = Depends(get_servicios),
) -> str | None:
    if token is None:
        return None
    return _usuario_de_token(token, sv).id


def get_current_user(
    token: str | None = Depends(oauth2_scheme),
    sv: Servicios = Depends(get_servicios),
) -> Usuario:
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No autenticado",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return _usuario_de_token(token, sv)


def crear_app(servicios: Servicios | None = None) -> FastAPI:
    """
    Con ``servicios`` se usan las dependencias dadas (tests); si no, se
    construyen desde el entorno al arrancar y se liberan al apagar.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        propios = getattr(app.state, "servicios", None) is None
        if propios:
            app.state.servicios = Servicios.desde_settings(load_settings())
        yield
        if propios:
            app.state.servicios.cerrar()

    app = FastAPI(title="Agendamiento de Turnos API", version="1.0.0", lifespan=lifespan)
    if servicios is not None:
        app.state.servicios = servicios

    # Errores

    @app.exception_handler(ErrorAgendamiento)
    async def error_agendamiento(request: Request, exc: ErrorAgendamiento) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.mensaje, "error": exc.codigo})

    @app.exception_handler(RequestValidationError)
    async def error_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": jsonable_encoder(exc.errors()), "error": "VALIDATION_ERROR"},
        )

    # AUTH endpoints

    @app.post("/auth/register", status_code=status.HTTP_201_CREATED)
    def register(payload: RegisterIn, sv: Servicios = Depends(get_servicios)) -> dict[str, Any]:
        user_id = crear_usuario(sv.sesiones, payload.username, payload.password)
        return {"ok": True, "user_id": user_id}

    @app.post("/auth/login", response_model=TokenOut)
    def login(form: OAuth2PasswordRequestForm = Depends(), sv: Servicios = Depends(get_servicios)) -> TokenOut:
        u = autenticar(sv.sesiones, form.username, form.password)
        if not u:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Credenciales inválidas")

        token = create_access_token(sv.settings, subject=u.id)
        return TokenOut(access_token=token)

    @app.get("/auth/me", response_model=MeOut)
    def me(user: Usuario = Depends(get_current_user)) -> MeOut:
        return MeOut(id=user.id, username=user.username)

    # Turnos

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"status": "ok"}

    @app.post("/appointments", status_code=status.HTTP_201_CREATED)
    def crear(
        payload: TurnoCrearIn,
        actor_id: str | None = Depends(get_actor_id),
        sv: Servicios = Depends(get_servicios),
    ) -> dict[str, Any]:
        return sv.agenda.crear_turno(**payload.model_dump(), actor_id=actor_id)

    @app.get("/appointments")
    def listar(
        estado: EstadoTurno | None = Query(None),
        medico_id: int | None = Query(None),
        paciente_id: int | None = Query(None),
        fecha: date | None = Query(None),
        fecha_desde: date | None = Query(None),
        fecha_hasta: date | None = Query(None),
        sv: Servicios = Depends(get_servicios),
    ) -> list[dict[str, Any]]:
        return sv.agenda.listar_turnos(
            estado=estado,
            medico_id=medico_id,
            paciente_id=paciente_id,
            fecha=fecha,
            fecha_desde=fecha_desde,
            fecha_hasta=fecha_hasta,
        )

    @app.get("/appointments/{turno_id}")
    def obtener(turno_id: int, sv: Servicios = Depends(get_servicios)) -> dict[str, Any]:
        return sv.agenda.obtener_turno(turno_id)

    @app.put("/appointments/{turno_id}")
    def modificar(
        turno_id: int,
        payload: TurnoModificarIn,
        actor_id: str | None = Depends(get_actor_id),
        sv: Servicios = Depends(get_servicios),
    ) -> dict[str, Any]:
        return sv.agenda.modificar_turno(turno_id, payload.model_dump(exclude_unset=True), actor_id=actor_id)

    @app.patch("/appointments/{turno_id}/confirm")
    def confirmar(
        turno_id: int,
        actor_id: str | None = Depends(get_actor_id),
        sv: Servicios = Depends(get_servicios),
    ) -> dict[str, Any]:
        return sv.agenda.confirmar_turno(turno_id, actor_id=actor_id)

    @app.patch("/appointments/{turno_id}/cancel")
    def cancelar(
        turno_id: int,
        payload: CancelarIn,
        actor_id: str | None = Depends(get_actor_id),
        sv: Servicios = Depends(get_servicios),
    ) -> dict[str, Any]:
        return sv.agenda.cancelar_turno(turno_id, payload.motivo, actor_id=actor_id)

    @app.patch("/appointments/{turno_id}/complete")
    def completar(
        turno_id: int,
        actor_id: str | None = Depends(get_actor_id),
        sv: Servicios = Depends(get_servicios),
    ) -> dict[str, Any]:
        return sv.agenda.completar_turno(turno_id, actor_id=actor_id)

    @app.patch("/appointments/{turno_id}/no-show")
    def no_show(
        turno_id: int,
        actor_id: str | None = Depends(get_actor_id),
        sv: Servicios = Depends(get_servicios),
    ) -> dict[str, Any]:
        return sv.agenda.marcar_no_show(turno_id, actor_id=actor_id)

    @app.get("/appointments/{turno_id}/history")
    def historial(turno_id: int, sv: Servicios = Depends(get_servicios)) -> list[dict[str, Any]]:
        return sv.agenda.historial_turno(turno_id)

    @app.get("/availability")
    def disponibilidad(
        medico_id: int = Query(..., gt=0),
        fecha: date = Query(...),
        hora: time = Query(...),
        sv: Servicios = Depends(get_servicios),
    ) -> dict[str, Any]:
        disponible = sv.agenda.consultar_disponibilidad(medico_id, fecha, hora)
        return {"medico_id": medico_id, "fecha": fecha.isoformat(), "hora": hora.strftime("%H:%M"), "disponible": disponible}

    # Historial y estadísticas

    @app.get("/historial")
    def buscar_historial(
        turno_id: int | None = Query(None, gt=0),
        tipo: TipoCambio | None = Query(None),
        fecha_inicio: date | None = Query(None),
        fecha_fin: date | None = Query(None),
        pagina: int = Query(1, ge=1),
        limite: int = Query(10, ge=1, le=100),
        sv: Servicios = Depends(get_servicios),
    ) -> dict[str, Any]:
        return sv.agenda.buscar_historial(
            turno_id=turno_id,
            tipo=tipo,
            fecha_inicio=fecha_inicio,
            fecha_fin=fecha_fin,
            pagina=pagina,
            limite=limite,
        )

    @app.get("/estadisticas")
    def estadisticas(
        fecha_inicio: date = Query(...),
        fecha_fin: date = Query(...),
        sv: Servicios = Depends(get_servicios),
    ) -> dict[str, Any]:
        return sv.agenda.estadisticas_cambios(fecha_inicio, fecha_fin)

    return app


app = crear_app()
