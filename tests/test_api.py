from __future__ import annotations

import pytest
from jose import jwt

NUEVO = {
    "paciente_id": 1,
    "medico_id": 7,
    "fecha": "2025-03-10",
    "hora": "14:00",
    "dia_semana": 1,
    "motivo": "Control",
}


@pytest.fixture
def token(client) -> str:
    r = client.post("/auth/register", json={"username": "Recepcion", "password": "clave-segura"})
    assert r.status_code == 201
    r = client.post("/auth/login", data={"username": "recepcion", "password": "clave-segura"})
    assert r.status_code == 200
    return r.json()["access_token"]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_ciclo_completo(client):
    r = client.post("/appointments", json=NUEVO)
    assert r.status_code == 201
    turno = r.json()
    assert turno["estado"] == "PENDING"

    r = client.patch(f"/appointments/{turno['id']}/confirm")
    assert r.status_code == 200
    assert r.json()["estado"] == "CONFIRMED"

    r = client.patch(f"/appointments/{turno['id']}/confirm")
    assert r.status_code == 409
    assert r.json()["error"] == "INVALID_TRANSITION"

    r = client.patch(f"/appointments/{turno['id']}/complete")
    assert r.json()["estado"] == "COMPLETED"

    r = client.patch(f"/appointments/{turno['id']}/cancel", json={"motivo": "tarde"})
    assert r.status_code == 409

    historial = client.get(f"/appointments/{turno['id']}/history").json()
    assert [h["tipo_cambio"] for h in historial] == ["COMPLETED", "CONFIRMED", "CREATED"]


def test_conflicto_de_horario(client):
    assert client.post("/appointments", json=NUEVO).status_code == 201
    r = client.post("/appointments", json=dict(NUEVO, hora="14:15", paciente_id=2))
    assert r.status_code == 409
    assert r.json()["error"] == "SLOT_CONFLICT"

    r = client.get("/availability", params={"medico_id": 7, "fecha": "2025-03-10", "hora": "14:30"})
    assert r.json()["disponible"] is True
    r = client.get("/availability", params={"medico_id": 7, "fecha": "2025-03-10", "hora": "14:15"})
    assert r.json()["disponible"] is False


@pytest.mark.parametrize(
    "cambios",
    [
        {"hora": "25:00"},
        {"dia_semana": 9},
        {"paciente_id": "uno"},
    ],
)
def test_request_invalido_es_400(client, cambios):
    r = client.post("/appointments", json=dict(NUEVO, **cambios))
    assert r.status_code == 400
    assert r.json()["error"] == "VALIDATION_ERROR"


def test_reglas_de_negocio_son_400(client):
    r = client.post("/appointments", json=dict(NUEVO, fecha="2025-03-09", dia_semana=0))
    assert r.status_code == 400
    assert r.json()["error"] == "VALIDATION_ERROR"


def test_recursos_inexistentes_son_404(client):
    assert client.get("/appointments/999").status_code == 404
    assert client.patch("/appointments/999/no-show").status_code == 404
    r = client.post("/appointments", json=dict(NUEVO, medico_id=99))
    assert r.status_code == 404
    assert r.json()["error"] == "NOT_FOUND"


def test_directorio_caido_es_503(client, directorio):
    directorio.caido = True
    r = client.post("/appointments", json=NUEVO)
    assert r.status_code == 503
    assert r.json()["error"] == "UPSTREAM_UNAVAILABLE"


def test_modificar_y_cancelar(client):
    turno = client.post("/appointments", json=NUEVO).json()

    r = client.put(f"/appointments/{turno['id']}", json={"hora": "16:00"})
    assert r.status_code == 200
    assert r.json()["hora"] == "16:00"

    r = client.put(f"/appointments/{turno['id']}", json={})
    assert r.status_code == 400

    r = client.patch(f"/appointments/{turno['id']}/cancel", json={"motivo": ""})
    assert r.status_code == 400

    r = client.patch(f"/appointments/{turno['id']}/cancel", json={"motivo": "Viaje"})
    assert r.json()["estado"] == "CANCELLED"
    assert r.json()["motivo_cancelacion"] == "Viaje"


def test_listar_con_filtros(client):
    a = client.post("/appointments", json=NUEVO).json()
    client.post("/appointments", json=dict(NUEVO, medico_id=8, paciente_id=2))
    client.patch(f"/appointments/{a['id']}/confirm")

    assert len(client.get("/appointments").json()) == 2
    assert [t["id"] for t in client.get("/appointments", params={"estado": "CONFIRMED"}).json()] == [a["id"]]
    assert len(client.get("/appointments", params={"medico_id": 8}).json()) == 1
    assert client.get("/appointments", params={"estado": "OTRO"}).status_code == 400


def test_actor_del_token_queda_en_el_historial(client, token):
    headers = {"Authorization": f"Bearer {token}"}
    me = client.get("/auth/me", headers=headers).json()
    assert me["username"] == "recepcion"

    turno = client.post("/appointments", json=NUEVO, headers=headers).json()
    historial = client.get(f"/appointments/{turno['id']}/history").json()
    assert historial[0]["actor_id"] == me["id"]


def test_token_y_perfil_solo_llevan_la_identidad_del_actor(client, token):
    assert set(jwt.get_unverified_claims(token)) == {"sub", "iat", "exp"}
    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"}).json()
    assert set(me) == {"id", "username"}
    assert me["id"] == jwt.get_unverified_claims(token)["sub"]


def test_sin_token_el_actor_es_nulo(client):
    turno = client.post("/appointments", json=NUEVO).json()
    assert client.get(f"/appointments/{turno['id']}/history").json()[0]["actor_id"] is None


def test_token_invalido_es_401(client):
    r = client.post("/appointments", json=NUEVO, headers={"Authorization": "Bearer basura"})
    assert r.status_code == 401
    assert client.get("/auth/me").status_code == 401


def test_login_y_registro_invalidos(client, token):
    r = client.post("/auth/login", data={"username": "recepcion", "password": "otra"})
    assert r.status_code == 401
    r = client.post("/auth/register", json={"username": "recepcion", "password": "x"})
    assert r.status_code == 400


def test_modificar_con_null_vacia_el_motivo(client):
    turno = client.post("/appointments", json=NUEVO).json()

    r = client.put(f"/appointments/{turno['id']}", json={"motivo": None})
    assert r.status_code == 200
    assert r.json()["motivo"] is None

    r = client.put(f"/appointments/{turno['id']}", json={"hora": None})
    assert r.status_code == 400
    assert client.get(f"/appointments/{turno['id']}").json()["hora"] == "14:00"


def test_listar_por_rango_de_fechas(client):
    client.post("/appointments", json=NUEVO)
    client.post("/appointments", json=dict(NUEVO, fecha="2025-03-12", dia_semana=3))

    r = client.get("/appointments", params={"fecha_desde": "2025-03-11", "fecha_hasta": "2025-03-20"})
    assert [t["fecha"] for t in r.json()] == ["2025-03-12"]
    r = client.get("/appointments", params={"fecha_desde": "2025-03-12", "fecha_hasta": "2025-03-10"})
    assert r.status_code == 400


def test_historial_global_paginado(client):
    a = client.post("/appointments", json=NUEVO).json()
    b = client.post("/appointments", json=dict(NUEVO, medico_id=8)).json()
    client.patch(f"/appointments/{a['id']}/confirm")

    r = client.get("/historial", params={"limite": 2})
    assert r.status_code == 200
    pagina = r.json()
    assert (pagina["total"], pagina["paginas"], pagina["pagina"]) == (3, 2, 1)
    assert [h["tipo_cambio"] for h in pagina["items"]] == ["CONFIRMED", "CREATED"]
    assert len(client.get("/historial", params={"limite": 2, "pagina": 2}).json()["items"]) == 1

    solo_b = client.get("/historial", params={"turno_id": b["id"]}).json()
    assert [h["turno_id"] for h in solo_b["items"]] == [b["id"]]

    creados = client.get("/historial", params={"tipo": "CREATED"}).json()
    assert creados["total"] == 2

    # los cambios quedan con la fecha del reloj (2025-03-01)
    assert client.get("/historial", params={"fecha_inicio": "2025-03-01", "fecha_fin": "2025-03-01"}).json()["total"] == 3
    assert client.get("/historial", params={"fecha_inicio": "2025-03-02"}).json()["total"] == 0

    assert client.get("/historial", params={"limite": 0}).status_code == 400
    assert client.get("/historial", params={"tipo": "OTRO"}).status_code == 400


def test_estadisticas_por_tipo(client):
    a = client.post("/appointments", json=NUEVO).json()
    client.patch(f"/appointments/{a['id']}/cancel", json={"motivo": "Viaje"})

    r = client.get("/estadisticas", params={"fecha_inicio": "2025-02-01", "fecha_fin": "2025-03-01"})
    assert r.status_code == 200
    stats = r.json()
    assert stats["total"] == 2
    assert stats["por_tipo"]["CREATED"] == 1
    assert stats["por_tipo"]["CANCELLED"] == 1
    assert stats["por_tipo"]["NO_SHOW"] == 0

    fuera = client.get("/estadisticas", params={"fecha_inicio": "2025-03-02", "fecha_fin": "2025-03-31"}).json()
    assert fuera["total"] == 0

    assert client.get("/estadisticas", params={"fecha_inicio": "2025-03-01"}).status_code == 400
    r = client.get("/estadisticas", params={"fecha_inicio": "2025-03-31", "fecha_fin": "2025-03-01"})
    assert r.status_code == 400
