"""Application configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """App settings with env var overrides."""

    # Audio
    sample_rate: int = 44100

    # Onset extraction
    frame_duration: float = 0.02  # seconds per analysis window, rounded up to a power of two samples
    onset_sensitivity: float = 1.5
    threshold_window: float = 0.75  # seconds of trailing envelope history
    noise_floor: float = 1e-4
    min_onset_gap: float = 0.05

    # Periodicity
    min_bpm: float = 40.0
    max_bpm: float = 220.0
    bpm_step: float = 0.5
    alignment_tolerance: float = 0.08  # fraction of the candidate period
    octave_margin: float = 0.1
    canonical_min_bpm: float = 80.0
    canonical_max_bpm: float = 160.0
    min_onsets: int = 4

    # Tap tempo
    tap_window: int = 8
    tap_min_interval: float = 0.25
    tap_max_interval: float = 2.0
    tap_inactivity_timeout: float = 3.0
    tap_expiry_timer: bool = True

    # Reliability
    usable_confidence: float = 0.4
    high_confidence: float = 0.7
    tap_confidence_taps: int = 8

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"
    max_upload_mb: int = 50

    model_config = {"env_prefix": "TEMPOTAP_"}


settings = Settings()
