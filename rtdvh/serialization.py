from __future__ import annotations

import csv
import logging
import re
from pathlib import Path
from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .errors import SerializationFormatError
from .histogram import DvhCurve
from .metrics import SHOW_COLUMN, VOLUME_NAME_COLUMN, MetricsTable

logger = logging.getLogger(__name__)

DOSE_FIELD_RE = re.compile(r"^(?P<name>.*) Dose \((?P<unit>[^()]*)\)$")
VALUE_FIELD_RE = re.compile(r"^(?P<name>.*) Value \(% of (?P<volume>[^ ]+) cc\)$")

PathLike = Union[str, Path]


def dose_header(name: str, unit: str) -> str:
    return f"{name} Dose ({unit})"


def value_header(name: str, total_volume_cc: float) -> str:
    return f"{name} Value (% of {total_volume_cc:.3f} cc)"


def _format_value(value: float, delimiter: str) -> str:
    text = f"{value:.6f}"
    if delimiter == "\t":
        text = text.replace(".", ",")
    return text


def _check_delimiter(delimiter: str) -> None:
    if delimiter not in (",", "\t"):
        raise ValueError(f"delimiter must be ',' or tab, got {delimiter!r}")


def _check_names(names: Sequence[str], delimiter: str) -> None:
    for name in names:
        if delimiter in name or "\n" in name:
            raise ValueError(f"structure name {name!r} contains the field delimiter")


def curves_to_frame(
    curves: Sequence[DvhCurve],
    delimiter: str = ",",
    dose_unit: Optional[str] = None,
) -> pd.DataFrame:
    """Lay curves out side by side as text cells, padding short curves with blanks."""
    n_rows = max((len(c) for c in curves), default=0)
    data = {}
    for curve in curves:
        unit = dose_unit if dose_unit is not None else curve.dose_unit
        pad = [""] * (n_rows - len(curve))
        data[dose_header(curve.name, unit)] = [_format_value(v, delimiter) for v in curve.doses] + pad
        data[value_header(curve.name, curve.total_volume_cc)] = [
            _format_value(v, delimiter) for v in curve.volumes
        ] + pad
    if len(data) != 2 * len(curves):
        raise ValueError("structure names in a DVH table must be unique")
    return pd.DataFrame(data, columns=list(data))


def export_curves(
    curves: Sequence[DvhCurve],
    path: PathLike,
    delimiter: str = ",",
    dose_unit: Optional[str] = None,
) -> Path:
    """Write DVH curves as a CSV (``delimiter=','``) or TSV (tab) table.

    Each curve takes two columns, ``<name> Dose (<unit>)`` and
    ``<name> Value (% of <volume> cc)``. Values carry 6 decimals; TSV output
    uses a decimal comma.
    """
    _check_delimiter(delimiter)
    _check_names([c.name for c in curves], delimiter)
    path = Path(path)
    frame = curves_to_frame(curves, delimiter, dose_unit)
    frame.to_csv(
        path,
        sep=delimiter,
        index=False,
        quoting=csv.QUOTE_NONE,
        lineterminator="\n",
    )
    logger.info("Exported %d DVH curve(s) to %s", len(curves), path)
    return path


def _detect_delimiter(header_line: str) -> str:
    return "\t" if "\t" in header_line else ","


def _parse_number(text: str, delimiter: str, path: Path, where: str) -> float:
    if delimiter == "\t":
        text = text.replace(",", ".")
    try:
        return float(text)
    except ValueError:
        raise SerializationFormatError(f"{path}: invalid number {text!r} at {where}", path=str(path)) from None


def _parse_header(fields: List[str], delimiter: str, path: Path):
    # The table has a trailing delimiter when written by some tools
    while fields and not fields[-1].strip():
        fields = fields[:-1]
    if not fields or len(fields) % 2:
        raise SerializationFormatError(
            f"{path}: header has {len(fields)} field(s), expected an even number", path=str(path)
        )

    structures = []
    for i in range(0, len(fields), 2):
        dose_match = DOSE_FIELD_RE.match(fields[i])
        value_match = VALUE_FIELD_RE.match(fields[i + 1])
        if dose_match is None or value_match is None:
            raise SerializationFormatError(
                f"{path}: malformed header fields {fields[i]!r}, {fields[i + 1]!r}", path=str(path)
            )
        name = dose_match.group("name")
        if value_match.group("name") != name:
            raise SerializationFormatError(
                f"{path}: header pair names differ ({name!r} vs {value_match.group('name')!r})",
                path=str(path),
            )
        volume = _parse_number(value_match.group("volume"), delimiter, path, f"header field {i + 2}")
        if volume == 0:
            logger.warning("Invalid structure volume in DVH header field %r", fields[i + 1])
        structures.append((name, dose_match.group("unit"), volume))
    return structures


def import_curves(path: PathLike, delimiter: Optional[str] = None) -> List[DvhCurve]:
    """Read a DVH table written by :func:`export_curves`.

    Returns one DvhCurve per header pair, carrying the structure name and the
    total volume from the header. Any malformed header or cell rejects the
    whole file.

    Raises:
        SerializationFormatError: the file is not a valid DVH table.
    """
    path = Path(path)
    with open(path, "r") as f:
        header_line = f.readline().rstrip("\r\n")
    if delimiter is None:
        delimiter = _detect_delimiter(header_line)
    _check_delimiter(delimiter)

    try:
        raw = pd.read_csv(
            path,
            sep=delimiter,
            header=None,
            dtype=str,
            keep_default_na=False,
            quoting=csv.QUOTE_NONE,
            skip_blank_lines=True,
            engine="python",
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        raise SerializationFormatError(f"{path}: unreadable table ({exc})", path=str(path)) from exc
    raw = raw.fillna("")

    structures = _parse_header([str(v) for v in raw.iloc[0].tolist()], delimiter, path)
    body = raw.iloc[1:]
    if body.shape[1] > 2 * len(structures):
        extra = body.iloc[:, 2 * len(structures):]
        if (extra.apply(lambda col: col.str.strip()) != "").to_numpy().any():
            raise SerializationFormatError(f"{path}: data cells beyond the last header field", path=str(path))

    curves: List[DvhCurve] = []
    for k, (name, unit, volume) in enumerate(structures):
        doses: List[float] = []
        values: List[float] = []
        ended = False
        for row_no, (dose_text, value_text) in enumerate(
            zip(body.iloc[:, 2 * k].tolist(), body.iloc[:, 2 * k + 1].tolist()), start=2
        ):
            dose_text, value_text = dose_text.strip(), value_text.strip()
            if not dose_text and not value_text:
                ended = True
                continue
            if ended or not dose_text or not value_text:
                raise SerializationFormatError(
                    f"{path}: incomplete sample for {name!r} on line {row_no}", path=str(path)
                )
            doses.append(_parse_number(dose_text, delimiter, path, f"line {row_no}"))
            values.append(_parse_number(value_text, delimiter, path, f"line {row_no}"))
        curves.append(
            DvhCurve(
                name=name,
                doses=np.asarray(doses),
                volumes=np.asarray(values),
                total_volume_cc=volume,
                structure_id=name,
                dose_unit=unit,
            )
        )

    logger.info("Imported %d DVH curve(s) from %s", len(curves), path)
    return curves


def export_metrics_table(table: MetricsTable, path: PathLike, delimiter: str = ",") -> Path:
    """Write the metrics table without the visibility and dose volume name columns."""
    _check_delimiter(delimiter)
    frame = table.to_frame().drop(columns=[SHOW_COLUMN, VOLUME_NAME_COLUMN])
    _check_names([str(c) for c in frame.columns], delimiter)
    _check_names([str(v) for v in frame.iloc[:, 0].tolist()], delimiter)
    path = Path(path)
    frame.to_csv(
        path,
        sep=delimiter,
        index=False,
        na_rep="",
        quoting=csv.QUOTE_NONE,
        lineterminator="\n",
    )
    logger.info("Exported metrics for %d structure(s) to %s", len(frame), path)
    return path
