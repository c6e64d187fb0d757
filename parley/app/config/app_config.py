import logging
import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from parley.app.config.languages import RealtimeModel, get_input_language, get_target_language
from parley.app.config.logging_config import LoggingConfigModel

logger = logging.getLogger(__name__)


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


class AudioConfig(BaseModel):
    """Capture format handed to the remote service.

    The format is fixed: mono 16-bit PCM at 24kHz in 1024-sample frames (~42.7ms).
    If the input device cannot run at this rate the capture layer resamples.
    """

    sample_rate: int = 24000
    channels: Literal[1] = 1
    dtype: Literal["int16"] = Field("int16", description="Sample format sent to the remote service")
    frame_size: int = Field(1024, description="Samples per captured frame")
    device: Optional[int] = None

    @property
    def frame_duration_seconds(self) -> float:
        return self.frame_size / self.sample_rate


class TransportConfig(BaseModel):
    """Streaming socket endpoint, keepalive and reconnect behaviour."""

    base_url: str = "wss://api.openai.com/v1/realtime"
    model: RealtimeModel = RealtimeModel.STABLE
    beta_header: str = Field("realtime=v1", description="Value of the OpenAI-Beta header")
    keepalive_interval_seconds: float = Field(4.0, gt=0, description="Seconds between keepalive pings")
    keepalive_timeout_seconds: float = Field(10.0, gt=0, description="Seconds to wait for a pong before failing")
    max_reconnect_attempts: int = Field(5, ge=0, description="Reconnect attempts before surfacing a terminal error")
    reconnect_backoff_base: float = Field(2.0, gt=1.0, description="Reconnect delay is base ** attempt seconds")
    open_timeout_seconds: float = Field(10.0, gt=0, description="Timeout for the opening handshake")

    @property
    def endpoint_url(self) -> str:
        return self.model.endpoint_url(self.base_url)


class SubmissionConfig(BaseModel):
    """Adaptive submission policy tuning.

    Range-limited values are clamped into their supported interval instead of
    being rejected, so settings coming from a UI slider can never fail validation.
    """

    policy: Literal["semantic", "amplitude"] = Field(
        "semantic", description="Preferred voice activity policy. Semantic falls back to amplitude when unavailable."
    )
    check_interval_seconds: float = Field(0.2, gt=0, description="Scheduler tick interval")
    pause_threshold_seconds: float = Field(1.5, description="Silence after activity that counts as a pause (0.5-3.0)")
    max_buffer_frames: int = Field(150, description="Frames accumulated before a forced commit (50-300)")
    max_submission_interval_seconds: float = Field(
        4.0, description="Safety-net interval since last activity that forces a commit (2-10)"
    )
    amplitude_threshold: float = Field(0.01, description="RMS level above which a frame counts as voice (0.005-0.05)")
    minimum_speech_duration_seconds: float = Field(
        0.05, description="Speech shorter than this is discarded as noise (0.05-1.0)"
    )
    minimum_commit_frames: int = Field(3, ge=1, description="Segments with fewer frames are discarded as near-empty")
    pre_roll_frames: int = Field(12, ge=0, description="Frames kept before a semantic speech start and sent with it")

    @field_validator("pause_threshold_seconds")
    @classmethod
    def _clamp_pause(cls, v: float) -> float:
        return clamp(v, 0.5, 3.0)

    @field_validator("max_buffer_frames")
    @classmethod
    def _clamp_buffer(cls, v: int) -> int:
        return int(clamp(v, 50, 300))

    @field_validator("max_submission_interval_seconds")
    @classmethod
    def _clamp_interval(cls, v: float) -> float:
        return clamp(v, 2.0, 10.0)

    @field_validator("amplitude_threshold")
    @classmethod
    def _clamp_threshold(cls, v: float) -> float:
        return clamp(v, 0.005, 0.05)

    @field_validator("minimum_speech_duration_seconds")
    @classmethod
    def _clamp_min_speech(cls, v: float) -> float:
        return clamp(v, 0.05, 1.0)


class SemanticVADConfig(BaseModel):
    """Recognizer-backed voice activity detection."""

    silence_threshold_seconds: float = Field(1.0, description="Silence that ends a speech segment (0.5-2.0)")
    minimum_speech_duration_seconds: float = Field(0.05, description="Shorter speech is ignored (0.05-1.0)")
    speech_start_delay_seconds: float = Field(0.2, ge=0, description="Speech must persist this long before start fires")
    poll_interval_seconds: float = Field(0.05, gt=0, description="Recognizer thread wake-up interval")
    model_path: Optional[str] = Field(None, description="Vosk model directory. Without it semantic VAD is unavailable.")

    @field_validator("silence_threshold_seconds")
    @classmethod
    def _clamp_silence(cls, v: float) -> float:
        return clamp(v, 0.5, 2.0)

    @field_validator("minimum_speech_duration_seconds")
    @classmethod
    def _clamp_min_speech(cls, v: float) -> float:
        return clamp(v, 0.05, 1.0)


class SessionConfig(BaseModel):
    """Translation session behaviour and remote session parameters."""

    mode: Literal["continuous", "single_utterance"] = "continuous"
    response_encoding: Literal["incremental", "structured"] = Field(
        "incremental", description="Plain streamed text deltas, or one JSON payload per response"
    )
    response_modalities: Literal["text", "text_audio"] = "text"
    target_language: str = "zh-TW"
    input_language: str = "auto"
    temperature: float = Field(0.8, ge=0.6, le=1.2)
    max_response_output_tokens: int = Field(4096, ge=1)
    transcription_model: str = "whisper-1"
    finalize_timeout_seconds: float = Field(10.0, gt=0, description="Safety net for the last response after stop")
    empty_transcript_placeholder: str = "(no transcription)"
    empty_translation_placeholder: str = "(no translation)"

    @field_validator("target_language")
    @classmethod
    def _known_target(cls, v: str) -> str:
        return get_target_language(v).code

    @field_validator("input_language")
    @classmethod
    def _known_input(cls, v: str) -> str:
        return get_input_language(v).code


class UsageConfig(BaseModel):
    input_cost_per_1k_tokens: float = 0.01
    output_cost_per_1k_tokens: float = 0.02


class CredentialConfig(BaseModel):
    environment_variable: str = Field("OPENAI_API_KEY", description="Fallback source for the API key")
    min_key_length: int = 20
    max_key_length: int = 200


class AppInfoConfig(BaseModel):
    default_app_name_for_data_dir: str = Field(default="parley_translator", description="Default app name for data directory")
    user_data_dir_suffix: str = Field(default="_data", description="Suffix for user data directory")


class StorageConfig(BaseModel):
    """Persistent storage locations.

    Absolute paths are filled in by GlobalAppConfig.__init__ unless a
    ``user_data_root`` override is given.
    """

    history_subdir: str = "history"
    settings_subdir: str = "settings"
    history_filename: str = "transcription_history.json"
    usage_filename: str = "token_usage.json"
    credential_filename: str = "credentials.json"
    max_history_items: int = Field(100, ge=1, le=100)
    user_data_root: Optional[str] = None
    history_dir: Optional[str] = None
    settings_dir: Optional[str] = None


class GlobalAppConfig(BaseModel):
    """Main configuration container aggregating every subsystem section.

    Creates the storage directory structure on instantiation.
    """

    logging: LoggingConfigModel = LoggingConfigModel()
    app_info: AppInfoConfig = AppInfoConfig()
    audio: AudioConfig = AudioConfig()
    transport: TransportConfig = TransportConfig()
    submission: SubmissionConfig = SubmissionConfig()
    semantic_vad: SemanticVADConfig = SemanticVADConfig()
    session: SessionConfig = SessionConfig()
    usage: UsageConfig = UsageConfig()
    credentials: CredentialConfig = CredentialConfig()
    storage: StorageConfig = StorageConfig()

    def __init__(self, **data: any) -> None:
        super().__init__(**data)
        self._setup_storage_paths()

    def _setup_storage_paths(self) -> None:
        storage = self.storage
        user_data_root = storage.user_data_root or get_default_user_data_root(app_info=self.app_info)
        history_dir = os.path.join(user_data_root, storage.history_subdir)
        settings_dir = os.path.join(user_data_root, storage.settings_subdir)

        for d in [history_dir, settings_dir]:
            os.makedirs(d, exist_ok=True)

        storage.user_data_root = user_data_root
        storage.history_dir = history_dir
        storage.settings_dir = settings_dir


CONFIG_FILE_NAME = "settings.yaml"
DEFAULT_CONFIG_DIR_NAME = "config"


def get_config_path(config_dir: Optional[str] = None, config_file: str = CONFIG_FILE_NAME) -> str:
    """Resolve the configuration file path.

    Uses ``config_dir`` when given, otherwise the ``config`` directory shipped
    inside the parley package.
    """
    if config_dir:
        return os.path.join(config_dir, config_file)

    package_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    return os.path.join(package_root, DEFAULT_CONFIG_DIR_NAME, config_file)


def load_app_config(config_path: Optional[str] = None) -> GlobalAppConfig:
    """Load configuration from YAML with fallback to defaults.

    Returns default GlobalAppConfig if the file is missing, empty, or lacks the
    'app' root key. YAML syntax errors and validation failures are logged and raised.

    Args:
        config_path: Optional explicit path to configuration file.

    Returns:
        Loaded GlobalAppConfig instance.
    """
    actual_config_path = config_path or get_config_path()
    logger.debug(f"Loading application configuration from: {actual_config_path}")

    try:
        with open(actual_config_path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f)
        if not config_data or "app" not in config_data:
            logger.warning(
                f"Configuration file {actual_config_path} is empty or missing 'app' root. Using default GlobalAppConfig."
            )
            return GlobalAppConfig()
        return GlobalAppConfig(**(config_data.get("app") or {}))
    except FileNotFoundError:
        logger.warning(f"Configuration file not found at {actual_config_path}. Using default GlobalAppConfig.")
        return GlobalAppConfig()
    except yaml.YAMLError as e:
        logger.error(f"Error parsing YAML configuration file {actual_config_path}: {e}")
        raise
    except Exception as e:
        logger.error(f"Failed to load configuration from {actual_config_path}: {e}")
        raise


def get_default_user_data_root(app_info: AppInfoConfig) -> str:
    """Per-user data root: %APPDATA% on Windows, the home directory elsewhere."""
    if os.name == "nt":
        base = os.environ.get("APPDATA", os.path.expanduser("~"))
    else:
        base = os.path.expanduser("~")
    return os.path.join(base, app_info.default_app_name_for_data_dir + app_info.user_data_dir_suffix)
