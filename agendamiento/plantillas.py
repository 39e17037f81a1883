"""
Renderizado de plantillas de notificación con Jinja2.

Las plantillas solo admiten sustitución simple ``{{ variable }}``: sin tags,
filtros, llamadas ni acceso a atributos. Cada plantilla declara el conjunto
de variables que usa; se valida al construir el descriptor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from jinja2 import Environment, StrictUndefined, TemplateSyntaxError, UndefinedError, meta, nodes

from .errores import PlantillaInvalida, VariableFaltante
from .notificaciones_models import CanalNotificacion, Plantilla, TipoNotificacion

logger = logging.getLogger(__name__)

_env = Environment(
    autoescape=False,
    undefined=StrictUndefined,
    keep_trailing_newline=True,
)

# Nodos permitidos: texto plano y {{ nombre }}
_NODOS_PERMITIDOS = (nodes.Template, nodes.Output, nodes.TemplateData, nodes.Name)


def _variables_usadas(nombre: str, texto: str) -> set[str]:
    try:
        ast = _env.parse(texto)
    except TemplateSyntaxError as exc:
        raise PlantillaInvalida(f"Plantilla '{nombre}' con sintaxis inválida: {exc}") from exc

    for nodo in ast.find_all(nodes.Node):
        if not isinstance(nodo, _NODOS_PERMITIDOS):
            raise PlantillaInvalida(
                f"Plantilla '{nombre}': solo se permite sustitución de variables (encontrado {type(nodo).__name__})"
            )
    return set(meta.find_undeclared_variables(ast))


@dataclass(frozen=True)
class ContenidoRenderizado:
    asunto: str | None
    contenido: str


@dataclass(frozen=True)
class PlantillaNotificacion:
    nombre: str
    tipo: TipoNotificacion
    canal: CanalNotificacion
    contenido: str
    variables_requeridas: frozenset[str] = field(default_factory=frozenset)
    asunto: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "variables_requeridas", frozenset(self.variables_requeridas))

        usadas = _variables_usadas(self.nombre, self.contenido)
        if self.asunto is not None:
            usadas |= _variables_usadas(self.nombre, self.asunto)

        no_declaradas = usadas - self.variables_requeridas
        if no_declaradas:
            raise PlantillaInvalida(
                f"Plantilla '{self.nombre}' usa variables no declaradas: {', '.join(sorted(no_declaradas))}"
            )

    @classmethod
    def desde_modelo(cls, p: Plantilla) -> "PlantillaNotificacion":
        return cls(
            nombre=p.nombre,
            tipo=p.tipo,
            canal=p.canal,
            contenido=p.contenido,
            variables_requeridas=frozenset(p.variables or []),
            asunto=p.asunto,
        )


def render(plantilla: PlantillaNotificacion, variables: Mapping[str, Any]) -> ContenidoRenderizado:
    """
    Función pura: mismas entradas, misma salida.
    Las variables faltantes fallan antes de renderizar (VariableFaltante).
    """
    faltantes = {v for v in plantilla.variables_requeridas if variables.get(v) is None}
    if faltantes:
        raise VariableFaltante(plantilla.nombre, faltantes)

    contexto = {k: variables[k] for k in plantilla.variables_requeridas}
    try:
        asunto = _env.from_string(plantilla.asunto).render(contexto) if plantilla.asunto is not None else None
        contenido = _env.from_string(plantilla.contenido).render(contexto)
    except UndefinedError as exc:
        raise VariableFaltante(plantilla.nombre, {str(exc)}) from exc

    logger.debug("Plantilla %s renderizada", plantilla.nombre)
    return ContenidoRenderizado(asunto=asunto, contenido=contenido)
