from __future__ import annotations

import argparse
import datetime
import logging
import shutil
from pathlib import Path
from typing import Any

from .catalog import backfill_fluxes, load_catalog_csv
from .config import load_config, resolve_workers, write_sample_config
from .images import load_images, read_image_list
from .infer import InferOptions, infer, write_results
from .layout import celeste_layout
from .logging_utils import resolve_log_file, setup_logging
from .objective import load_objective
from .tiling import break_blob_into_tiles, write_tile_index


def _add_common(ap: argparse.ArgumentParser) -> None:
    ap.add_argument("--config", required=True, help="Path to YAML config")


def _load_images(cfg: dict[str, Any]):
    paths = read_image_list(cfg["inputs"]["image_list_file"], cfg["config_dir"])
    return load_images(
        paths,
        cfg["model"]["bands"],
        psf_cfg=cfg["psf"],
        max_workers=resolve_workers(cfg["performance"]["image_read_workers"]),
    )


def run_tiles(cfg: dict[str, Any]) -> Path:
    images = _load_images(cfg)
    tiled = break_blob_into_tiles(images, int(cfg["infer"]["tile_width"]))
    return write_tile_index(tiled, cfg["outputs"]["tiles_dir"])


def run_inference(cfg: dict[str, Any]) -> Path:
    log = logging.getLogger("celestefit.cli")
    bands = cfg["model"]["bands"]
    callable_spec = cfg["objective"]["callable"]
    if not callable_spec:
        raise ValueError("objective.callable must be set to 'package.module:attr' to run inference")
    objective = load_objective(callable_spec, factory=bool(cfg["objective"]["factory"]))

    catalog = load_catalog_csv(cfg["inputs"]["catalog"], bands)
    images = _load_images(cfg)
    if bool(cfg["catalog"]["backfill_fluxes"]):
        catalog = backfill_fluxes(catalog, images, r_ap=float(cfg["catalog"]["r_ap"]))

    layout = celeste_layout(n_bands=len(bands), position_scale=float(cfg["model"]["position_scale"]))
    options = InferOptions.from_config(cfg)
    log.info("Options: %s", options)
    results = infer(catalog, images, objective, options, layout=layout)
    return write_results(results, cfg["outputs"]["results_csv"], layout, band_names=bands)


def main(argv: list[str] | None = None) -> int:
    setup_logging()
    log = logging.getLogger("celestefit.cli")

    from . import __version__

    ap = argparse.ArgumentParser(prog="celestefit")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_dump = sub.add_parser("dump-config", help="Write the latest sample config file")
    ap_dump.add_argument("--out", default="sample_config.yaml", help="Output path for sample config")
    ap_dump.add_argument("--force", action="store_true", help="Overwrite if output file exists")

    ap_tiles = sub.add_parser("tiles", help="Tile the images and write the tile index only")
    _add_common(ap_tiles)

    ap_run = sub.add_parser("run", help="Fit every selected catalog source")
    _add_common(ap_run)

    args = ap.parse_args(argv)

    if args.cmd == "dump-config":
        out = write_sample_config(args.out, overwrite=bool(args.force))
        log.info("Wrote sample config: %s", out)
        return 0

    cfg = load_config(args.config)

    log_cfg = cfg.get("logging", {})
    log_cfg["file"] = resolve_log_file(log_cfg, cfg["outputs"]["work_dir"], args.cmd)
    setup_logging(log_cfg, force=True)

    work_dir = Path(cfg["outputs"]["work_dir"])
    work_dir.mkdir(parents=True, exist_ok=True)
    cfg_src = cfg.get("config_path")
    if cfg_src and Path(cfg_src).exists():
        ts = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
        snap = work_dir / f"config_used_{ts}.yaml"
        shutil.copy2(str(cfg_src), str(snap))
        log.info("Config snapshot saved: %s", snap)

    if args.cmd == "tiles":
        run_tiles(cfg)
    elif args.cmd == "run":
        run_inference(cfg)
    else:
        raise SystemExit(f"Unknown command: {args.cmd}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
