"""celestefit package."""

from .config import load_config
from .infer import InferenceResult, InferOptions, infer
from .layout import ParamLayout, celeste_layout
from .optimize import OptimizeResult, OptimizeStatus, maximize_f
from .transform import ParameterTransform

try:
    from importlib.metadata import version as _meta_version
    __version__: str = _meta_version("celestefit")
except Exception:
    __version__ = "0.0.0.dev"

__all__ = [
    "__version__",
    "InferenceResult",
    "InferOptions",
    "OptimizeResult",
    "OptimizeStatus",
    "ParamLayout",
    "ParameterTransform",
    "celeste_layout",
    "infer",
    "load_config",
    "maximize_f",
]
