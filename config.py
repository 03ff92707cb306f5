"""
Configuration module for the Bedrock agent loop.
Handles environment variables, the provider capability table, and the
tunable limits used by the context, rate-limit, retry and loop-detection engines.
"""

import os
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Union
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class AWSConfig:
    """AWS-specific configuration"""
    region: str = os.getenv("AWS_REGION", "us-east-1")
    access_key_id: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    secret_access_key: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    session_token: str = os.getenv("AWS_SESSION_TOKEN", "")
    profile_name: str = os.getenv("AWS_PROFILE", "")

    def has_explicit_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    def has_session_token(self) -> bool:
        return bool(self.session_token)

    def has_profile(self) -> bool:
        return bool(self.profile_name)


@dataclass
class ModelConfig:
    """Model-specific configuration"""
    model_id: str = os.getenv("BEDROCK_MODEL_ID", "us.anthropic.claude-sonnet-4-20250514-v1:0")
    max_tokens: int = int(os.getenv("MAX_TOKENS", "8192"))
    temperature: Optional[float] = float(os.getenv("TEMPERATURE", "1")) if os.getenv("TEMPERATURE") else None


_DEFAULT_DANGEROUS_COMMANDS = (
    "rm ,rm -rf,sudo,chmod,chown,mv ,npm install,yarn add,pip install,"
    "git push,git reset,apt install,brew install"
)


@dataclass
class AgentConfig:
    """Control loop configuration"""
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    working_directory: str = os.getenv("WORKING_DIRECTORY", ".")
    max_iterations: int = int(os.getenv("MAX_ITERATIONS", "100"))
    # Wall-clock ceiling per session in seconds; 0 disables it
    session_timeout: float = float(os.getenv("SESSION_TIMEOUT", "0"))
    # Characters of each tool output folded into history; older turns are compressed further
    result_preview_chars: int = int(os.getenv("RESULT_PREVIEW_CHARS", "4000"))
    context_aggressiveness: str = os.getenv("CONTEXT_AGGRESSIVENESS", "moderate")
    auto_approve_basic_operations: bool = _env_bool("AUTO_APPROVE_BASIC_OPERATIONS", "true")
    # YOLO mode: approve shell commands when no approval callback is wired up
    auto_approve_commands: bool = _env_bool("AUTO_APPROVE_COMMANDS", "false")
    session_dir: str = os.getenv(
        "SESSION_DIR", os.path.join(os.path.expanduser("~"), ".bedrock-agent-loop", "sessions")
    )
    require_approval_for: List[str] = field(default_factory=lambda: [
        s for s in os.getenv("REQUIRE_APPROVAL_FOR", _DEFAULT_DANGEROUS_COMMANDS).split(",") if s
    ])


@dataclass
class RateLimitSettings:
    """Sliding-window provider budget"""
    tokens_per_minute: int = int(os.getenv("RATE_LIMIT_TOKENS_PER_MINUTE", "30000"))
    requests_per_minute: int = int(os.getenv("RATE_LIMIT_REQUESTS_PER_MINUTE", "50"))
    max_wait_attempts: int = int(os.getenv("RATE_LIMIT_MAX_WAIT_ATTEMPTS", "3"))
    # Below this wait (ms) a request is let through instead of sleeping
    min_wait_ms: int = 1000
    # Fraction of the budget at which a usage warning is logged
    burst_threshold: float = 0.8


@dataclass
class RetrySettings:
    """Default retry policy for provider calls"""
    max_retries: int = int(os.getenv("RETRY_MAX_RETRIES", "3"))
    base_delay_ms: int = int(os.getenv("RETRY_BASE_DELAY_MS", "1000"))
    max_delay_ms: int = int(os.getenv("RETRY_MAX_DELAY_MS", "30000"))
    backoff_multiplier: float = float(os.getenv("RETRY_BACKOFF_MULTIPLIER", "2"))
    jitter: bool = _env_bool("RETRY_JITTER", "true")


@dataclass
class LoopDetectionSettings:
    """Repetition detector thresholds. Tuned empirically, not contract values."""
    window_seconds: float = 10 * 60
    max_same_tool_calls: int = 15
    read_only_multiplier: int = 2
    max_identical_calls: int = 4
    # list_directory on the workspace root
    benign_identical_calls: int = 3
    rapid_window_seconds: float = 60
    rapid_call_threshold: int = 3
    exploration_max_iteration: int = 3
    exploration_lookback_seconds: float = 2 * 60
    batch_write_ceiling: int = 20


# ============================================================
# Provider capability table
# Context window size and structured tool-call support per model.
# max_allowed_tokens / recommended_tokens override the derived thresholds.
# ============================================================
AVAILABLE_MODELS: List[Dict[str, Any]] = [
    {
        "id": "us.anthropic.claude-opus-4-1-20250805-v1:0",
        "name": "Claude Opus 4.1",
        "provider": "anthropic",
        "context_window": 200000,
        "max_output_tokens": 32000,
        "supports_tools": True,
    },
    {
        "id": "us.anthropic.claude-sonnet-4-20250514-v1:0",
        "name": "Claude Sonnet 4",
        "provider": "anthropic",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "supports_tools": True,
    },
    {
        "id": "us.anthropic.claude-3-7-sonnet-20250219-v1:0",
        "name": "Claude 3.7 Sonnet",
        "provider": "anthropic",
        "context_window": 200000,
        "max_output_tokens": 16000,
        "supports_tools": True,
    },
    {
        "id": "anthropic.claude-3-5-haiku-20241022-v1:0",
        "name": "Claude 3.5 Haiku",
        "provider": "anthropic",
        "context_window": 200000,
        "max_output_tokens": 8192,
        "supports_tools": True,
    },
    {
        "id": "anthropic.claude-v2:1",
        "name": "Claude 2.1",
        "provider": "anthropic",
        "context_window": 100000,
        "max_output_tokens": 4096,
        "supports_tools": False,
    },
    {
        "id": "meta.llama3-1-70b-instruct-v1:0",
        "name": "Llama 3.1 70B Instruct",
        "provider": "meta",
        "context_window": 128000,
        "max_output_tokens": 2048,
        "supports_tools": False,
    },
    {
        "id": "deepseek.r1-v1:0",
        "name": "DeepSeek R1",
        "provider": "deepseek",
        "context_window": 64000,
        "max_output_tokens": 8192,
        "supports_tools": False,
    },
]

# Substring -> context window, for ids missing from the table
_FAMILY_CONTEXT_WINDOWS = [
    ("claude-2", 100000),
    ("claude-v2", 100000),
    ("gemini", 128000),
    ("gpt-4", 128000),
    ("deepseek", 64000),
]

DEFAULT_CONTEXT_WINDOW = 200000

# Known window sizes -> (max allowed, recommended threshold)
_KNOWN_THRESHOLDS = {
    64000: (44000, 34000),
    100000: (75000, 65000),
    128000: (98000, 88000),
    200000: (160000, 140000),
}


@dataclass
class ContextWindowInfo:
    """Token budget for one model"""
    context_window: int
    max_allowed_size: int
    recommended_threshold: int


# Create global config instances
aws_config = AWSConfig()
model_config = ModelConfig()
agent_config = AgentConfig()
rate_limit_settings = RateLimitSettings()
retry_settings = RetrySettings()
loop_detection_settings = LoopDetectionSettings()


def get_model_by_id(model_id: str) -> Optional[Dict[str, Any]]:
    """Get model configuration by ID"""
    for model in AVAILABLE_MODELS:
        if model["id"] == model_id:
            return model
    return None


def get_model_name(model_id: str) -> str:
    """Get the display name for a model ID"""
    model = get_model_by_id(model_id)
    return model["name"] if model else model_id


def get_model_config(model_id: str) -> Dict[str, Any]:
    """Get the full configuration for a model. Unknown IDs get a fallback dict
    whose context window is guessed from the model family."""
    model = get_model_by_id(model_id)
    if model:
        return model
    lowered = (model_id or "").lower()
    window = DEFAULT_CONTEXT_WINDOW
    for fragment, size in _FAMILY_CONTEXT_WINDOWS:
        if fragment in lowered:
            window = size
            break
    return {
        "id": model_id,
        "name": model_id,
        "provider": "anthropic" if "anthropic" in lowered or "claude" in lowered else "unknown",
        "context_window": window,
        "max_output_tokens": 4096,
        "supports_tools": "claude" in lowered and window >= DEFAULT_CONTEXT_WINDOW,
    }


def get_context_window(model_id: str) -> int:
    return get_model_config(model_id).get("context_window", DEFAULT_CONTEXT_WINDOW)


def get_max_output_tokens(model_id: str) -> int:
    return get_model_config(model_id).get("max_output_tokens", 4096)


def supports_tools(model_id: str) -> bool:
    """Check if the model accepts structured tool definitions"""
    return get_model_config(model_id).get("supports_tools", False)


def get_context_window_info(model: Union[str, int]) -> ContextWindowInfo:
    """Budget thresholds for a model id or a raw context window size.

    Known window sizes use fixed thresholds; anything else keeps a 40k/60k
    margin, or 75%/65% of the window when that is larger.
    """
    entry: Dict[str, Any] = {}
    if isinstance(model, int):
        window = model
    else:
        entry = get_model_config(model)
        window = entry.get("context_window", DEFAULT_CONTEXT_WINDOW)

    if window in _KNOWN_THRESHOLDS:
        max_allowed, recommended = _KNOWN_THRESHOLDS[window]
    else:
        max_allowed = int(max(window - 40000, window * 0.75))
        recommended = int(max(window - 60000, window * 0.65))

    return ContextWindowInfo(
        context_window=window,
        max_allowed_size=entry.get("max_allowed_tokens", max_allowed),
        recommended_threshold=entry.get("recommended_tokens", recommended),
    )


def get_credentials_info() -> str:
    if aws_config.has_profile():
        return f"Using AWS profile: {aws_config.profile_name}"
    elif aws_config.has_explicit_credentials():
        if aws_config.has_session_token():
            return "Using temporary credentials (with session token)"
        return "Using explicit credentials"
    return "Using default credential chain"
