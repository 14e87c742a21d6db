"""
The ELBO collaborator.

An objective is any callable ``objective(tiled_images, mp, active_sources)``
returning the ELBO value and, for every active source, the gradient with
respect to that source's constrained parameter vector.
"""

from __future__ import annotations

import importlib
from typing import Any, Callable, Mapping, NamedTuple, Protocol, Sequence

import numpy as np

from .model_params import ModelParams


class ObjectiveResult(NamedTuple):
    value: float
    gradient: Mapping[int, np.ndarray]


class Objective(Protocol):
    def __call__(self, tiled_images: Sequence[Any], mp: ModelParams, active_sources: Sequence[int]) -> Any:
        ...


def as_objective_result(out: Any) -> ObjectiveResult:
    if isinstance(out, ObjectiveResult):
        return out
    try:
        value, gradient = out
    except (TypeError, ValueError):
        raise TypeError(f"objective must return (value, gradient), got {type(out).__name__}") from None
    if not isinstance(gradient, Mapping):
        raise TypeError(f"objective gradient must map source index -> array, got {type(gradient).__name__}")
    return ObjectiveResult(value=float(value), gradient=gradient)


def load_objective(spec: str, factory: bool = False) -> Callable[..., Any]:
    """Import ``"package.module:attr"``; with ``factory`` the attribute is called once to build it."""
    if not isinstance(spec, str) or ":" not in spec:
        raise ValueError(f"objective.callable must look like 'package.module:attr'. Got: {spec!r}")
    mod_name, _, attr_path = spec.partition(":")
    module = importlib.import_module(mod_name.strip())
    obj: Any = module
    for part in attr_path.strip().split("."):
        obj = getattr(obj, part)
    if factory:
        obj = obj()
    if not callable(obj):
        raise TypeError(f"objective {spec!r} is not callable")
    return obj
