from __future__ import annotations

import importlib
import importlib.util
import json
from pathlib import Path
from typing import Any

import numpy as np
import yaml

from .graph import Activity


def load_model(ref: str) -> Activity:
    target, sep, attr = ref.rpartition(":")
    if not sep or not target or not attr:
        raise ValueError(f"Invalid model reference: {ref} (expected module:callable or file.py:callable)")

    if target.endswith(".py"):
        path = Path(target)
        if not path.exists():
            raise FileNotFoundError(target)
        spec = importlib.util.spec_from_file_location(path.stem, path)
        if spec is None or spec.loader is None:
            raise ValueError(f"Cannot import model file: {path}")
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
    else:
        module = importlib.import_module(target)

    try:
        factory = getattr(module, attr)
    except AttributeError as exc:
        raise ValueError(f"Model reference {ref}: {target} has no attribute {attr}") from exc

    model = factory() if callable(factory) and not isinstance(factory, Activity) else factory
    if not isinstance(model, Activity):
        raise ValueError(f"Model reference {ref} did not produce an activity (got {type(model).__name__})")
    return model


def load_reference_cdf(path: str | Path) -> np.ndarray:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(str(path))

    suffix = p.suffix.lower()
    raw: Any
    if suffix in {".yaml", ".yml"}:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    elif suffix == ".json":
        raw = json.loads(p.read_text(encoding="utf-8"))
    else:
        raise ValueError(f"Unsupported reference format: {p.suffix} (expected .json/.yaml/.yml)")

    if isinstance(raw, dict):
        raw = raw.get("cdf")
    if not isinstance(raw, list) or not raw:
        raise ValueError(f"Invalid reference CDF: {p} (expected a non-empty list or a mapping with 'cdf')")
    try:
        return np.asarray(raw, dtype=float)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid reference CDF: {p}") from exc
