"""
Sub-signal strategies for the quality and liveness gate.

Each sub-signal (blur, illumination, resolution, angle, blink, motion,
texture, depth) and the anti-spoof score is produced by its own strategy so
it can be swapped or tested on its own. The default strategy reads the value
supplied by the detector and only falls back to a heuristic computed from
the face crop or landmarks when the detector left it out.

Temporal strategies (blink, motion, depth) look at the track's recent
observations and report 0.0 when there is no history yet.
"""

import math
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

import cv2
import numpy as np

from ..errors import InvalidObservation
from ..models import Observation


class SignalStrategy(Protocol):
    """Protocol for a single sub-signal scorer."""

    def score(self, observation: Observation, history: Sequence[Observation]) -> float:
        """Return a score in [0, 1]."""
        ...


def validate_unit_score(name: str, value: float) -> float:
    """
    Check that a sub-score is a finite number in [0, 1].

    Raises:
        InvalidObservation: If the value is out of range or not finite
    """
    value = float(value)
    if not math.isfinite(value) or value < 0.0 or value > 1.0:
        raise InvalidObservation(f'{name} score must be within [0, 1], got {value}')
    return value


def _clip01(value: float) -> float:
    return float(min(1.0, max(0.0, value)))


def _to_gray(face_img: np.ndarray) -> np.ndarray:
    img = np.asarray(face_img)
    if img.dtype != np.uint8:
        img = np.clip(img, 0, 255).astype(np.uint8)
    if img.ndim == 3:
        return cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    return img


def _require_crop(name: str, observation: Observation) -> np.ndarray:
    if observation.face_crop is None or np.asarray(observation.face_crop).size == 0:
        raise InvalidObservation(f'{name} score not supplied and no face crop to compute it from')
    return _to_gray(observation.face_crop)


def _landmark_center(observation: Observation, key: str) -> Optional[np.ndarray]:
    if not observation.landmarks or key not in observation.landmarks:
        return None
    points = np.asarray(observation.landmarks[key], dtype=np.float64).reshape(-1, 2)
    return points.mean(axis=0)


def compute_blur_score(gray_face: np.ndarray) -> float:
    """
    Compute blur score using Laplacian variance.

    Higher values indicate sharper images.

    Args:
        gray_face: Grayscale face image

    Returns:
        Blur score (Laplacian variance)
    """
    return float(cv2.Laplacian(gray_face, cv2.CV_64F).var())


def eye_aspect_ratio(eye: np.ndarray) -> float:
    """
    Eye aspect ratio over six eye contour points (p1..p6).

    EAR = (|p2-p6| + |p3-p5|) / (2 |p1-p4|); drops towards 0 as the eye closes.
    """
    p = np.asarray(eye, dtype=np.float64).reshape(-1, 2)
    if p.shape[0] != 6:
        raise InvalidObservation(f'eye landmarks need 6 points, got {p.shape[0]}')
    horizontal = np.linalg.norm(p[0] - p[3])
    if horizontal == 0:
        return 0.0
    vertical = np.linalg.norm(p[1] - p[5]) + np.linalg.norm(p[2] - p[4])
    return float(vertical / (2.0 * horizontal))


class LaplacianBlurScore:
    """Sharpness from Laplacian variance, saturating at `saturation`."""

    def __init__(self, saturation: float = 300.0):
        self.saturation = saturation

    def score(self, observation: Observation, history: Sequence[Observation]) -> float:
        gray = _require_crop('blur', observation)
        return _clip01(compute_blur_score(gray) / self.saturation)


class IlluminationScore:
    """Penalises dark, bright and clipped faces."""

    def __init__(self, target: float = 128.0, clip_low: int = 5, clip_high: int = 250):
        self.target = target
        self.clip_low = clip_low
        self.clip_high = clip_high

    def score(self, observation: Observation, history: Sequence[Observation]) -> float:
        gray = _require_crop('illumination', observation)
        mean = float(np.mean(gray))
        balance = 1.0 - abs(mean - self.target) / self.target
        clipped = float(np.mean((gray <= self.clip_low) | (gray >= self.clip_high)))
        return _clip01(balance - clipped)


class FaceSizeScore:
    """Face height in pixels between `min_height` (0.0) and `target_height` (1.0)."""

    def __init__(self, min_height: float = 20.0, target_height: float = 112.0):
        self.min_height = min_height
        self.target_height = target_height

    def score(self, observation: Observation, history: Sequence[Observation]) -> float:
        height = observation.height
        if height < self.min_height:
            return 0.0
        return _clip01((height - self.min_height) / (self.target_height - self.min_height))


class EyeLineAngleScore:
    """Frontal-ness from eye-line roll and nose offset (yaw proxy)."""

    def __init__(self, max_roll_degrees: float = 30.0, max_yaw_ratio: float = 0.5):
        self.max_roll_degrees = max_roll_degrees
        self.max_yaw_ratio = max_yaw_ratio

    def score(self, observation: Observation, history: Sequence[Observation]) -> float:
        left = _landmark_center(observation, 'left_eye')
        right = _landmark_center(observation, 'right_eye')
        if left is None or right is None:
            raise InvalidObservation('angle score not supplied and no eye landmarks')

        dx, dy = right - left
        inter_ocular = math.hypot(dx, dy)
        if inter_ocular == 0:
            return 0.0

        roll = abs(math.degrees(math.atan2(dy, dx)))
        roll = min(roll, 180.0 - roll)
        score = 1.0 - roll / self.max_roll_degrees

        nose = _landmark_center(observation, 'nose')
        if nose is not None:
            mid = (left + right) / 2.0
            yaw_ratio = abs(nose[0] - mid[0]) / inter_ocular
            score *= 1.0 - yaw_ratio / self.max_yaw_ratio

        return _clip01(score)


class EyeAspectRatioBlinkScore:
    """
    Blink evidence from eye-aspect-ratio variation over the recent track.

    A drop of (1 - closed_ratio) relative to the open-eye EAR counts as a
    full blink.
    """

    def __init__(self, closed_ratio: float = 0.75, window: int = 10):
        self.closed_ratio = closed_ratio
        self.window = window

    def _ear(self, observation: Observation) -> Optional[float]:
        if not observation.landmarks:
            return None
        eyes = [observation.landmarks.get(k) for k in ('left_eye', 'right_eye')]
        eyes = [e for e in eyes if e is not None]
        if not eyes:
            return None
        return float(np.mean([eye_aspect_ratio(e) for e in eyes]))

    def score(self, observation: Observation, history: Sequence[Observation]) -> float:
        series = [self._ear(o) for o in list(history)[-self.window:] + [observation]]
        series = [v for v in series if v is not None]
        if len(series) < 2:
            return 0.0
        opened = max(series)
        if opened == 0:
            return 0.0
        drop = 1.0 - min(series) / opened
        return _clip01(drop / (1.0 - self.closed_ratio))


class CenterMotionScore:
    """
    Natural head micro-motion from bbox centre shifts, relative to face width.

    A perfectly static face (photo on a stand) scores low, so does a face
    jumping around more than `max_shift`.
    """

    def __init__(self, min_shift: float = 0.005, max_shift: float = 0.15, window: int = 10):
        self.min_shift = min_shift
        self.max_shift = max_shift
        self.window = window

    def score(self, observation: Observation, history: Sequence[Observation]) -> float:
        seq = list(history)[-self.window:] + [observation]
        if len(seq) < 2:
            return 0.0

        shifts = []
        for prev, cur in zip(seq, seq[1:]):
            width = max(cur.width, 1e-6)
            (px, py), (cx, cy) = prev.center, cur.center
            shifts.append(math.hypot(cx - px, cy - py) / width)
        shift = float(np.mean(shifts))

        if shift < self.min_shift:
            return _clip01(shift / self.min_shift)
        if shift <= self.max_shift:
            return 1.0
        return _clip01(1.0 - (shift - self.max_shift) / self.max_shift)


class LaplacianTextureScore:
    """High-frequency detail relative to contrast; flat prints and screens score low."""

    def __init__(self, saturation: float = 2.0):
        self.saturation = saturation

    def score(self, observation: Observation, history: Sequence[Observation]) -> float:
        gray = _require_crop('texture', observation).astype(np.float64)
        contrast = float(gray.std())
        if contrast < 1e-6:
            return 0.0
        detail = float(cv2.Laplacian(gray, cv2.CV_64F).std())
        return _clip01(detail / contrast / self.saturation)


class LandmarkParallaxDepthScore:
    """
    3D evidence from nose-versus-eyes parallax between frames.

    A flat photo moves rigidly, so nose and eye midpoint shift together.
    """

    def __init__(self, expected_parallax: float = 0.05, window: int = 10):
        self.expected_parallax = expected_parallax
        self.window = window

    def _points(self, observation: Observation):
        left = _landmark_center(observation, 'left_eye')
        right = _landmark_center(observation, 'right_eye')
        nose = _landmark_center(observation, 'nose')
        if left is None or right is None or nose is None:
            return None
        return (left + right) / 2.0, nose, float(np.linalg.norm(right - left))

    def score(self, observation: Observation, history: Sequence[Observation]) -> float:
        seq = [self._points(o) for o in list(history)[-self.window:] + [observation]]
        seq = [p for p in seq if p is not None]
        if len(seq) < 2:
            return 0.0

        parallax = []
        for (mid0, nose0, _), (mid1, nose1, iod) in zip(seq, seq[1:]):
            if iod == 0:
                continue
            relative = (nose1 - nose0) - (mid1 - mid0)
            parallax.append(float(np.linalg.norm(relative)) / iod)
        if not parallax:
            return 0.0
        return _clip01(float(np.mean(parallax)) / self.expected_parallax)


class SuppliedScore:
    """
    Reads a detector-supplied sub-score, computing it with `fallback` if absent.

    Args:
        group: 'quality' or 'liveness'
        name: Sub-signal field name within the group
        fallback: Strategy used when the detector did not supply the value
    """

    def __init__(self, group: str, name: str, fallback: Optional[SignalStrategy] = None):
        self.group = group
        self.name = name
        self.fallback = fallback

    def score(self, observation: Observation, history: Sequence[Observation]) -> float:
        value = getattr(getattr(observation, self.group), self.name)
        if value is not None:
            return validate_unit_score(self.name, value)
        if self.fallback is None:
            raise InvalidObservation(f'{self.name} score not supplied')
        return validate_unit_score(self.name, self.fallback.score(observation, history))


class SuppliedAntiSpoof:
    """Detector anti-spoof score, or the mean of texture and depth evidence."""

    def __init__(self, texture: SignalStrategy, depth: SignalStrategy):
        self.texture = texture
        self.depth = depth

    def score(self, observation: Observation, history: Sequence[Observation]) -> float:
        if observation.anti_spoof_score is not None:
            return validate_unit_score('anti_spoof', observation.anti_spoof_score)
        return 0.5 * (
            self.texture.score(observation, history) + self.depth.score(observation, history)
        )


@dataclass
class SignalSet:
    """One strategy per sub-signal used by the gate."""

    blur: SignalStrategy
    illumination: SignalStrategy
    resolution: SignalStrategy
    angle: SignalStrategy
    blink: SignalStrategy
    motion: SignalStrategy
    texture: SignalStrategy
    depth: SignalStrategy
    anti_spoof: SignalStrategy


def default_signal_set() -> SignalSet:
    """Supplied values first, image and landmark heuristics as fallback."""
    texture = SuppliedScore('liveness', 'texture', LaplacianTextureScore())
    depth = SuppliedScore('liveness', 'depth', LandmarkParallaxDepthScore())
    return SignalSet(
        blur=SuppliedScore('quality', 'blur', LaplacianBlurScore()),
        illumination=SuppliedScore('quality', 'illumination', IlluminationScore()),
        resolution=SuppliedScore('quality', 'resolution', FaceSizeScore()),
        angle=SuppliedScore('quality', 'angle', EyeLineAngleScore()),
        blink=SuppliedScore('liveness', 'blink', EyeAspectRatioBlinkScore()),
        motion=SuppliedScore('liveness', 'motion', CenterMotionScore()),
        texture=texture,
        depth=depth,
        anti_spoof=SuppliedAntiSpoof(texture, depth),
    )
