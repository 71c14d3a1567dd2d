from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import yaml

logger = logging.getLogger(__name__)

AUTOMATIC_OVERSAMPLING = "A"


def parse_metric_values(text: Union[str, Iterable[Any], None]) -> List[float]:
    """Parse a comma separated list of metric values ("5, 10,20.5").

    Entries that are not numbers are logged and skipped.
    """
    if text is None:
        return []
    if isinstance(text, str):
        tokens = text.split(",")
    else:
        tokens = list(text)

    values: List[float] = []
    for token in tokens:
        if isinstance(token, str):
            token = token.strip()
            if not token:
                continue
        try:
            values.append(float(token))
        except (TypeError, ValueError):
            logger.warning("Invalid metric value '%s' skipped", token)
    return values


@dataclass
class MetricSpec:
    # V metrics: volume receiving at least each dose
    v_doses: List[float] = field(default_factory=list)
    show_v_cc: bool = True
    show_v_percent: bool = False

    # D metrics: minimum dose received by each volume
    d_volumes_cc: List[float] = field(default_factory=list)
    d_volumes_percent: List[float] = field(default_factory=list)
    show_d: bool = True

    @classmethod
    def from_strings(
        cls,
        v_doses: str = "",
        d_volumes_cc: str = "",
        d_volumes_percent: str = "",
        **flags: bool,
    ) -> "MetricSpec":
        return cls(
            v_doses=parse_metric_values(v_doses),
            d_volumes_cc=parse_metric_values(d_volumes_cc),
            d_volumes_percent=parse_metric_values(d_volumes_percent),
            **flags,
        )

    def is_empty(self) -> bool:
        v_shown = bool(self.v_doses) and (self.show_v_cc or self.show_v_percent)
        d_shown = self.show_d and bool(self.d_volumes_cc or self.d_volumes_percent)
        return not (v_shown or d_shown)


@dataclass
class DvhConfig:
    # Dose volume binning
    start_value: float = 0.1
    step_size: float = 0.2
    # Intensity (non-dose) volume binning
    non_dose_samples: int = 100

    # Oversampling of the dose geometry
    oversampling_factor: float = 2.0
    automatic_oversampling: bool = False
    oversampling_clamp: Optional[Tuple[float, float]] = None  # (min, max) for automatic factors

    # Output
    dose_unit: str = "Gy"
    delimiter: str = ","

    # Concurrency
    workers: int | None = None  # None => auto (cpu_count - 1)

    metrics: MetricSpec = field(default_factory=MetricSpec)

    def __post_init__(self) -> None:
        if self.step_size <= 0:
            raise ValueError(f"step_size must be positive, got {self.step_size}")
        if self.non_dose_samples < 2:
            raise ValueError(f"non_dose_samples must be at least 2, got {self.non_dose_samples}")
        if not self.automatic_oversampling and self.oversampling_factor <= 0:
            raise ValueError(f"oversampling_factor must be positive, got {self.oversampling_factor}")
        if self.oversampling_clamp is not None:
            lo, hi = (float(v) for v in self.oversampling_clamp)
            if lo <= 0 or hi < lo:
                raise ValueError(f"invalid oversampling_clamp {self.oversampling_clamp}")
            self.oversampling_clamp = (lo, hi)
        if self.delimiter not in (",", "\t"):
            raise ValueError(f"delimiter must be ',' or tab, got {self.delimiter!r}")

    def effective_workers(self) -> int:
        if self.workers and self.workers > 0:
            return int(self.workers)
        cpu = os.cpu_count() or 2
        return max(1, cpu - 1)

    def policy(self):
        from .geometry import OversamplingPolicy

        if self.automatic_oversampling:
            return OversamplingPolicy.auto(clamp=self.oversampling_clamp)
        return OversamplingPolicy.fixed(self.oversampling_factor)


def _metric_spec_from_dict(data: Dict[str, Any]) -> MetricSpec:
    spec = MetricSpec()
    for key, value in data.items():
        if key in ("v_doses", "d_volumes_cc", "d_volumes_percent"):
            setattr(spec, key, parse_metric_values(value))
        elif key in ("show_v_cc", "show_v_percent", "show_d"):
            setattr(spec, key, bool(value))
        else:
            logger.warning("Unknown metrics option '%s' ignored", key)
    return spec


def config_from_dict(data: Dict[str, Any]) -> DvhConfig:
    known = {f.name for f in fields(DvhConfig)}
    kwargs: Dict[str, Any] = {}
    for key, value in (data or {}).items():
        if key == "oversampling":
            # Either a factor or "A" for per-structure automatic factors
            if isinstance(value, str) and value.strip().upper() == AUTOMATIC_OVERSAMPLING:
                kwargs["automatic_oversampling"] = True
            else:
                kwargs["oversampling_factor"] = float(value)
                kwargs["automatic_oversampling"] = False
        elif key == "metrics":
            kwargs["metrics"] = _metric_spec_from_dict(value or {})
        elif key == "oversampling_clamp":
            kwargs[key] = tuple(value) if value is not None else None
        elif key in known:
            kwargs[key] = value
        else:
            logger.warning("Unknown config option '%s' ignored", key)
    return DvhConfig(**kwargs)


def load_config(config_path: Union[str, Path, None]) -> DvhConfig:
    """
    Load DVH settings from a YAML file.

    Args:
        config_path: Path to YAML configuration file; defaults are used when
            it is None or missing.

    Returns:
        Populated DvhConfig
    """
    if config_path is None:
        return DvhConfig()
    config_path = Path(config_path)
    if not config_path.exists():
        logger.warning(f"DVH config not found: {config_path}; using defaults")
        return DvhConfig()

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f)

    if not data:
        logger.warning("Empty DVH config %s; using defaults", config_path)
        return DvhConfig()
    if not isinstance(data, dict):
        raise ValueError(f"DVH config {config_path} must be a mapping")

    config = config_from_dict(data)
    logger.info(f"Loaded DVH config from {config_path}")
    return config
