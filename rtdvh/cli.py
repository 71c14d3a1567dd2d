from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List

import pandas as pd

from .comparison import compare_curves
from .config import AUTOMATIC_OVERSAMPLING, DvhConfig, MetricSpec, load_config, parse_metric_values
from .dvh import DvhSession
from .errors import DvhError, InvalidMetricInputError
from .geometry import Structure
from .grid import read_grid
from .metrics import (
    STRUCTURE_COLUMN,
    VOLUME_CC_COLUMN,
    MetricSchema,
    dose_at_volume,
    volume_at_dose,
)
from .serialization import import_curves

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", default=None, help="YAML file with DVH settings")
    p.add_argument("--log-file", default=None, help="Also write log messages to this file")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity")


def _add_metric_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("--v-doses", default=None, help="Comma-separated doses for V metrics, e.g. '5,10,20'")
    p.add_argument("--v-percent", action="store_true", help="Report V metrics in percent as well as cc")
    p.add_argument("--d-cc", default=None, help="Comma-separated volumes (cc) for D metrics")
    p.add_argument("--d-percent", default=None, help="Comma-separated volumes (%%) for D metrics")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="rtdvh", description="Dose-volume histograms and DVH metrics")
    sub = p.add_subparsers(dest="command", required=True)

    c = sub.add_parser("compute", help="Compute DVHs from a dose image and structure masks")
    c.add_argument("--dose", required=True, help="Dose image (NRRD, NIfTI, MHA)")
    c.add_argument(
        "--mask",
        action="append",
        default=[],
        metavar="[NAME=]PATH",
        help="Structure mask image; repeat for more structures. Name defaults to the file stem.",
    )
    c.add_argument(
        "--oversampling",
        default=None,
        help=f"Oversampling factor, or '{AUTOMATIC_OVERSAMPLING}' for per-structure automatic factors",
    )
    c.add_argument("--intensity", action="store_true", help="Input image is not a dose (intensity volume histogram)")
    c.add_argument("--dose-unit", default=None, help="Dose unit for headers and columns (default: Gy)")
    c.add_argument("--workers", type=int, default=None, help="Parallel workers (default: cpu_count - 1)")
    c.add_argument("--dvh-out", default=None, help="Write DVH table to this file")
    c.add_argument("--metrics-out", default=None, help="Write metrics table to this file")
    c.add_argument("--tsv", action="store_true", help="Tab-separated output with decimal commas")
    _add_metric_options(c)
    _add_common(c)

    m = sub.add_parser("metrics", help="Evaluate V/D metrics on a stored DVH table")
    m.add_argument("dvh", help="DVH table written by 'compute'")
    m.add_argument("--out", default=None, help="Write metrics to this file instead of stdout")
    m.add_argument("--tsv", action="store_true", help="Tab-separated output")
    _add_metric_options(m)
    _add_common(m)

    k = sub.add_parser("compare", help="Percentage of agreeing bins between two DVH tables")
    k.add_argument("reference", help="Reference DVH table")
    k.add_argument("compared", help="Compared DVH table")
    k.add_argument("--volume-criterion", type=float, default=1.0, help="Volume difference criterion (%% of volume)")
    k.add_argument("--dose-criterion", type=float, default=1.0, help="Dose to agreement criterion (%% of max dose)")
    k.add_argument("--dose-max", type=float, default=None, help="Maximum dose (default: largest dose in the tables)")
    _add_common(k)
    return p


def _setup_logging(args: argparse.Namespace) -> None:
    level = logging.INFO if args.verbose == 0 else logging.DEBUG
    logging.basicConfig(level=level, format=LOG_FORMAT)
    if args.log_file:
        fh = logging.FileHandler(args.log_file, encoding="utf-8")
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(fh)


def _apply_metric_options(args: argparse.Namespace, spec: MetricSpec) -> MetricSpec:
    if args.v_doses is not None:
        spec.v_doses = parse_metric_values(args.v_doses)
    if args.v_percent:
        spec.show_v_percent = True
    if args.d_cc is not None:
        spec.d_volumes_cc = parse_metric_values(args.d_cc)
    if args.d_percent is not None:
        spec.d_volumes_percent = parse_metric_values(args.d_percent)
    return spec


def _parse_mask_arg(raw: str) -> tuple[str, Path]:
    if "=" in raw:
        name, path = raw.split("=", 1)
        return name.strip(), Path(path.strip())
    path = Path(raw)
    name = path.name
    for suffix in (".gz", ".nii", ".nrrd", ".mha", ".mhd"):
        if name.endswith(suffix):
            name = name[: -len(suffix)]
    return name, path


def _cmd_compute(args: argparse.Namespace, cfg: DvhConfig) -> int:
    if args.oversampling is not None:
        if args.oversampling.strip().upper() == AUTOMATIC_OVERSAMPLING:
            cfg.automatic_oversampling = True
        else:
            cfg.automatic_oversampling = False
            cfg.oversampling_factor = float(args.oversampling)
    if args.dose_unit:
        cfg.dose_unit = args.dose_unit
    if args.workers:
        cfg.workers = args.workers
    if args.tsv:
        cfg.delimiter = "\t"
    _apply_metric_options(args, cfg.metrics)

    if not args.mask:
        logger.error("No structure masks given (use --mask)")
        return 2

    dose_path = Path(args.dose)
    dose = read_grid(dose_path)
    structures: List[Structure] = []
    for raw in args.mask:
        name, path = _parse_mask_arg(raw)
        structures.append(Structure(id=name, name=name, mask=read_grid(path)))

    session = DvhSession(dose, cfg, is_dose_volume=not args.intensity, dose_volume_name=dose_path.name)

    def _progress(done: int, total: int) -> None:
        logger.debug("Structures done: %d/%d", done, total)

    results = session.run(structures, progress_callback=_progress)
    for result in results:
        if not result.ok:
            logger.error("%s", result.error)

    if args.dvh_out:
        session.export_curves(args.dvh_out)
    if args.metrics_out:
        session.export_metrics(args.metrics_out)
    else:
        print(session.table.to_frame().to_string(index=False))

    return 0 if any(r.ok for r in results) else 1


def _cmd_metrics(args: argparse.Namespace, cfg: DvhConfig) -> int:
    spec = _apply_metric_options(args, cfg.metrics)
    curves = import_curves(args.dvh)
    unit = curves[0].dose_unit if curves else cfg.dose_unit
    schema = MetricSchema(metrics=spec, dose_unit=unit)

    rows = []
    for curve in curves:
        row = {STRUCTURE_COLUMN: curve.name, VOLUME_CC_COLUMN: curve.total_volume_cc}
        for column, dose, as_percent in schema.v_columns():
            try:
                row[column] = volume_at_dose(curve, dose, as_percent=as_percent)
            except InvalidMetricInputError as exc:
                logger.warning("%s not computed: %s", column, exc)
                row[column] = float("nan")
        for column, volume, is_percent in schema.d_columns():
            try:
                row[column] = dose_at_volume(curve, volume, is_percent)
            except InvalidMetricInputError as exc:
                logger.warning("%s not computed: %s", column, exc)
                row[column] = float("nan")
        rows.append(row)
    frame = pd.DataFrame(rows)

    if args.out:
        frame.to_csv(args.out, sep="\t" if args.tsv else ",", index=False, na_rep="")
        logger.info("Wrote metrics for %d structure(s) to %s", len(frame), args.out)
    else:
        print(frame.to_string(index=False))
    return 0


def _cmd_compare(args: argparse.Namespace, cfg: DvhConfig) -> int:
    reference = {c.name: c for c in import_curves(args.reference)}
    compared = {c.name: c for c in import_curves(args.compared)}
    common = [name for name in reference if name in compared]
    if not common:
        logger.error("No structure names in common between %s and %s", args.reference, args.compared)
        return 1

    rows = []
    for name in common:
        agreement = compare_curves(
            reference[name],
            compared[name],
            args.volume_criterion,
            args.dose_criterion,
            args.dose_max,
        )
        rows.append({STRUCTURE_COLUMN: name, "Agreement (%)": agreement})
    for name in sorted(set(reference) ^ set(compared)):
        logger.warning("Structure %s is only in one of the tables; skipped", name)

    print(pd.DataFrame(rows).to_string(index=False))
    return 0


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    args = build_parser().parse_args(argv)
    _setup_logging(args)

    try:
        cfg = load_config(args.config)
        if args.command == "compute":
            return _cmd_compute(args, cfg)
        if args.command == "metrics":
            return _cmd_metrics(args, cfg)
        return _cmd_compare(args, cfg)
    except (DvhError, ValueError, OSError) as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
