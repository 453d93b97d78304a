from typing import Iterable, Sequence

import numpy as np

FaceDescriptor = np.ndarray


def to_descriptor(values: Sequence[float] | np.ndarray, *, length: int | None = None) -> FaceDescriptor:
    """Coerce a raw vector into a read-only float64 descriptor."""
    vec = np.asarray(values, dtype=np.float64).reshape(-1)
    if vec.size == 0:
        raise ValueError("Descriptor is empty.")
    if length is not None and vec.size != length:
        raise ValueError(f"Descriptor must have {length} values, got {vec.size}.")
    if not np.all(np.isfinite(vec)):
        raise ValueError("Descriptor contains non-finite values.")
    vec = vec.copy()
    vec.setflags(write=False)
    return vec


def descriptor_distance(a: FaceDescriptor, b: FaceDescriptor) -> float:
    """Euclidean distance; symmetric, non-negative, zero for identical inputs."""
    if a.shape != b.shape:
        raise ValueError("Descriptors must have the same length.")
    return float(np.linalg.norm(a - b))


def min_distance(candidate: FaceDescriptor, references: Iterable[FaceDescriptor]) -> float | None:
    refs = list(references)
    if not refs:
        return None
    stacked = np.vstack(refs)
    if stacked.shape[1] != candidate.shape[0]:
        raise ValueError("Descriptors must have the same length.")
    return float(np.min(np.linalg.norm(stacked - candidate, axis=1)))


def is_match(distance: float, threshold: float) -> bool:
    # boundary accepts
    return distance <= threshold


def match_confidence(distance: float, threshold: float) -> float:
    if threshold <= 0:
        return 1.0 if distance <= 0 else 0.0
    return float(min(1.0, max(0.0, 1.0 - distance / threshold)))
