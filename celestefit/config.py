from __future__ import annotations

import copy
from importlib import resources
from pathlib import Path
from typing import Any

import yaml


DEFAULT_CONFIG: dict[str, Any] = {
    "inputs": {
        "catalog": "path/to/catalog.csv",
        "image_list_file": "path/to/image_list.txt",
    },
    "outputs": {
        "work_dir": "path/to/work_dir",
        "results_csv": "celeste_results.csv",
        "tiles_dir": "tiles",
    },
    "model": {
        "bands": ["u", "g", "r", "i", "z"],
        "position_scale": 1.0,
    },
    "psf": {
        "model": "moffat",
        "fwhm_default_pix": 4.0,
        "beta": 3.5,
        "radius_pix": 25.0,
    },
    "catalog": {
        "r_ap": 5.0,
        "backfill_fluxes": True,
    },
    "infer": {
        "tile_width": 20,
        "min_flux": 2.0,
        "max_iters": 50,
        "noise_fraction": 0.1,
        "objid": None,
        "ra_range": [-1000.0, 1000.0],
        "dec_range": [-1000.0, 1000.0],
        "max_workers": 1,
    },
    "optimizer": {
        "ftol": 1e-9,
        "gtol": 1e-6,
        "frozen": [],
        "verbose": False,
    },
    "objective": {
        "callable": None,
        "factory": False,
    },
    "logging": {
        "ignore_warnings": True,
        "level": "INFO",
        "file": "auto",
        "format": "%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    },
    "performance": {
        "image_read_workers": "auto",
    },
}


# Keys whose default does not describe every accepted type.
_ALLOWED_TYPES: dict[str, tuple[type, ...]] = {
    "infer.objid": (str, int, type(None)),
    "objective.callable": (str, type(None)),
    "performance.image_read_workers": (int, str),
    "logging.file": (str, type(None)),
}

# (section, key, base) with base "config" or "work".
_PATH_KEYS = (
    ("inputs", "catalog", "config"),
    ("inputs", "image_list_file", "config"),
    ("outputs", "results_csv", "work"),
    ("outputs", "tiles_dir", "work"),
)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _matches_default(value: Any, default: Any) -> bool:
    if default is None:
        return True
    if isinstance(default, bool):
        return isinstance(value, bool)
    if isinstance(default, int):
        return isinstance(value, int) and not isinstance(value, bool)
    if isinstance(default, float):
        return _is_number(value)
    return isinstance(value, type(default))


def _describe(default: Any) -> str:
    if isinstance(default, dict):
        return "a mapping (YAML dict)"
    if isinstance(default, list):
        return "a list"
    return {bool: "a bool", int: "an int", float: "a float", str: "a string"}.get(type(default), type(default).__name__)


def _check_section(user: Any, defaults: dict[str, Any], where: str = "") -> None:
    """Reject unknown keys and values whose type disagrees with the default."""
    if not isinstance(user, dict):
        raise TypeError(f"Config section '{where or '<root>'}' must be a mapping (YAML dict).")
    for key, value in user.items():
        path = f"{where}.{key}" if where else str(key)
        if key not in defaults:
            raise KeyError(f"Unknown config key: {path}")
        default = defaults[key]
        if path in _ALLOWED_TYPES:
            if not isinstance(value, _ALLOWED_TYPES[path]):
                names = ", ".join(t.__name__ for t in _ALLOWED_TYPES[path])
                raise TypeError(f"Config key '{path}' must be one of: {names}")
        elif isinstance(default, dict):
            _check_section(value, default, path)
        elif not _matches_default(value, default):
            raise TypeError(f"Config key '{path}' must be {_describe(default)}.")


def _merged(defaults: dict[str, Any], user: dict[str, Any]) -> dict[str, Any]:
    cfg = copy.deepcopy(defaults)
    for key, value in user.items():
        if isinstance(value, dict) and isinstance(cfg.get(key), dict):
            cfg[key] = _merged(cfg[key], value)
        else:
            cfg[key] = copy.deepcopy(value)
    return cfg


def _abs_path(value: Any, base_dir: Path) -> Path | None:
    if value is None:
        return None
    p = Path(value).expanduser()
    return (p if p.is_absolute() else base_dir / p).resolve()


def _check_ranges(cfg: dict[str, Any]) -> None:
    for key in ("ra_range", "dec_range"):
        rng = cfg["infer"][key]
        if len(rng) != 2 or not all(_is_number(x) for x in rng):
            raise TypeError(f"Config key 'infer.{key}' must be a [low, high] pair of numbers.")
        if not float(rng[0]) < float(rng[1]):
            raise ValueError(f"Config key 'infer.{key}' must satisfy low < high, got {rng}")
    bands = cfg["model"]["bands"]
    if len(bands) < 2 or not all(isinstance(b, str) for b in bands):
        raise TypeError("Config key 'model.bands' must be a list of at least 2 band names.")
    if len(set(bands)) != len(bands):
        raise ValueError(f"Config key 'model.bands' has duplicates: {bands}")


def resolve_workers(value: Any) -> int | None:
    """'auto' -> None (let the pool decide), otherwise a positive int."""
    if isinstance(value, str):
        if value.strip().lower() == "auto":
            return None
        raise ValueError(f"workers must be 'auto' or a positive int. Got: {value!r}")
    if int(value) < 1:
        raise ValueError(f"workers must be >= 1. Got: {value}")
    return int(value)


def load_config(config_path: str | Path) -> dict[str, Any]:
    """Read a YAML config, validate it against DEFAULT_CONFIG and resolve paths.

    Input paths are relative to the config file; output paths and an explicit
    log file are relative to ``outputs.work_dir``.
    """
    cfg_path = Path(config_path).expanduser().resolve()
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config not found: {cfg_path}")
    user_cfg = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}

    _check_section(user_cfg, DEFAULT_CONFIG)
    cfg = _merged(DEFAULT_CONFIG, user_cfg)
    _check_ranges(cfg)

    cfg_dir = cfg_path.parent
    work_dir = _abs_path(cfg["outputs"]["work_dir"], cfg_dir)
    cfg["outputs"]["work_dir"] = work_dir
    bases = {"config": cfg_dir, "work": work_dir}
    for section, key, base in _PATH_KEYS:
        cfg[section][key] = _abs_path(cfg[section][key], bases[base])

    log_file = cfg["logging"]["file"]
    if log_file is not None and str(log_file).strip().lower() != "auto":
        cfg["logging"]["file"] = _abs_path(log_file, work_dir)

    cfg["config_path"] = cfg_path
    cfg["config_dir"] = cfg_dir
    return cfg


def write_sample_config(out_path: str | Path, overwrite: bool = False) -> Path:
    out = Path(out_path).expanduser().resolve()
    if out.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing file: {out}")
    sample = resources.files("celestefit").joinpath("data/sample_config.yaml").read_text(encoding="utf-8")
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(sample, encoding="utf-8")
    return out
