import numpy as np

from face_biometrics.antispoof import AntiSpoofingAnalyzer, lbp_histogram
from face_biometrics.models import Region

from tests.helpers import live_face_frame, live_face_frames, to_frame

FACE = Region(40, 24, 80, 72)
CHECKS = {"texture_consistency", "depth_variation", "reflection_absence", "frequency_consistency"}


def face_crop(index: int = 0) -> np.ndarray:
    return AntiSpoofingAnalyzer._crop(live_face_frame(index), FACE)


def test_lbp_histogram_is_normalised():
    hist = lbp_histogram(face_crop())
    assert hist.shape == (10,)
    assert np.isclose(hist.sum(), 1.0)


def test_live_face_passes():
    frames = live_face_frames(10)
    result = AntiSpoofingAnalyzer().analyze(frames[-1], frames, FACE)
    assert set(result.checks) == CHECKS
    assert result.passed
    assert result.score >= 0.75


def test_uniform_surface_fails():
    frame = to_frame(np.full((120, 160), 128.0))
    result = AntiSpoofingAnalyzer().analyze(frame, [frame] * 5, FACE)
    assert not result.passed
    assert result.checks["texture_consistency"] is False
    assert result.checks["depth_variation"] is False
    assert result.score <= 0.5


def test_flat_print_lacks_depth():
    rng = np.random.default_rng(7)
    crop = np.clip(128 + rng.normal(0, 10, (72, 80)), 0, 255).astype(np.uint8)
    assert AntiSpoofingAnalyzer().depth_variation(crop) is False
    assert AntiSpoofingAnalyzer().depth_variation(face_crop()) is True


def test_specular_patch_is_detected():
    crop = face_crop().copy()
    crop[:12, :40] = 255
    analyzer = AntiSpoofingAnalyzer()
    assert analyzer.reflection_absence(face_crop()) is True
    assert analyzer.reflection_absence(crop) is False


def test_screen_grid_is_detected():
    rng = np.random.default_rng(3)
    xx = np.arange(80)[None, :].repeat(72, axis=0)
    grating = 128 + 60 * np.sin(2 * np.pi * xx / 4.0) + rng.normal(0, 5, (72, 80))
    crop = np.clip(grating, 0, 255).astype(np.uint8)
    noise = np.clip(128 + rng.normal(0, 10, (72, 80)), 0, 255).astype(np.uint8)
    analyzer = AntiSpoofingAnalyzer()
    assert analyzer.frequency_consistency(crop) is False
    assert analyzer.frequency_consistency(noise) is True


def test_texture_drift_against_history():
    analyzer = AntiSpoofingAnalyzer()
    crop = face_crop(0)
    history = [face_crop(i) for i in range(1, 6)]
    assert analyzer.texture_consistency(crop, history) is True
    smooth = np.tile(np.linspace(60, 200, 80), (72, 1)).astype(np.uint8)
    assert analyzer.texture_consistency(crop, [smooth] * 3) is False


def test_pass_fraction_boundary():
    frames = live_face_frames(10)
    result = AntiSpoofingAnalyzer(pass_fraction=1.0).analyze(frames[-1], frames, FACE)
    assert result.passed == all(result.checks.values())
