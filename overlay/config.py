import json
import logging
import os
from pathlib import Path

from overlay.models import GenerationParams

logger = logging.getLogger(__name__)


DEFAULT_CONFIG = {
    # API
    "api_provider": "gemini",  # "gemini", "openai", "openrouter", "custom"
    "api_key": "",
    "base_url": "https://generativelanguage.googleapis.com/v1beta/openai",
    "model": "gemini-2.5-pro",
    "fast_model": "gemini-2.5-flash",
    "available_models": ["gemini-2.5-pro", "gemini-2.5-flash", "gemini-2.5-flash-lite"],
    "api_extra_headers": {},
    "api_fallback_enabled": True,
    # Ordered fallback routes, each mirroring the primary API fields.
    "api_routes": [],

    # Generation (passed through to the gateway as-is)
    "temperature": 1.0,
    "top_p": 0.95,
    "top_k": 64,
    "max_output_tokens": 65536,
    "thinking_enabled": True,
    "thinking_level": "high",  # "low" or "high"
    "safety_threshold": "BLOCK_NONE",
    "google_search_enabled": True,
    "analysis_max_output_tokens": 2048,
    "custom_instructions": "",

    # Ambient suggestions
    "suggestions_enabled": True,
    "suggestion_debounce_seconds": 3.0,
    "suggestion_ttl_seconds": 20.0,
    "suggestion_min_context_chars": 50,
    "suggestion_min_confidence": 0.7,
    "suggestion_max_active": 3,
    "suggestion_recent_topics_max": 10,

    # Rolling transcript context
    "context_max_phrases": 10,
    "context_max_chars": 500,
    "context_keep_words": 50,
    "context_fallback_trim_words": 30,

    # Transcription
    "whisper_model_size": "tiny",
    "whisper_device": "cpu",  # "cpu" or "cuda"
    "transcription_sample_rate": 16000,
    "transcription_chunk_seconds": 3.0,
    "transcription_interim_results": True,

    "verbose_logging": False,
}

SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)
_SAFETY_THRESHOLDS = {
    "BLOCK_NONE",
    "BLOCK_LOW_AND_ABOVE",
    "BLOCK_MEDIUM_AND_ABOVE",
    "BLOCK_ONLY_HIGH",
    "HARM_BLOCK_THRESHOLD_UNSPECIFIED",
}

_API_PROVIDER_PRESETS: dict[str, dict[str, object]] = {
    # Gemini via its OpenAI-compatible endpoint.
    "gemini": {
        "base_url": "https://generativelanguage.googleapis.com/v1beta/openai",
        "model": "gemini-2.5-pro",
        "api_key_env": "GEMINI_API_KEY",
    },
    "openai": {
        "base_url": "https://api.openai.com/v1",
        "model": "gpt-4o-mini",
        "api_key_env": "OPENAI_API_KEY",
    },
    "openrouter": {
        "base_url": "https://openrouter.ai/api/v1",
        "model": "google/gemini-2.5-pro",
        "api_key_env": "OPENROUTER_API_KEY",
    },
    "custom": {},
}


def get_config_path() -> Path:
    configured = os.environ.get("AMBIENT_OVERLAY_CONFIG_PATH")
    if configured:
        return Path(configured).expanduser().resolve()

    base_dir = os.environ.get("APPDATA") or str(Path.home())
    return (Path(base_dir) / "Ambient Overlay" / "settings.json").resolve()


def get_data_dir() -> Path:
    configured = os.environ.get("AMBIENT_OVERLAY_DATA_DIR")
    if configured:
        data_dir = Path(configured).expanduser()
    else:
        base_dir = os.environ.get("APPDATA") or str(Path.home())
        data_dir = Path(base_dir) / "Ambient Overlay" / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def get_history_path() -> Path:
    return get_data_dir() / "chat_history.json"


def _normalize_api_provider(provider: str | None) -> str:
    p = (provider or "").strip().casefold()
    if not p:
        return "custom"
    p = p.replace("-", "_").replace(" ", "_")
    if p in ("google", "google_ai", "google_gemini"):
        p = "gemini"
    if p in ("open_router",):
        p = "openrouter"
    if p not in _API_PROVIDER_PRESETS:
        return "custom"
    return p


def _infer_provider_from_base_url(base_url: str | None) -> str:
    u = (base_url or "").strip().casefold()
    if not u:
        return "custom"
    if "generativelanguage.googleapis.com" in u:
        return "gemini"
    if "api.openai.com" in u:
        return "openai"
    if "openrouter.ai" in u:
        return "openrouter"
    return "custom"


def _coerce_headers(value: object) -> dict[str, str]:
    if isinstance(value, dict):
        out: dict[str, str] = {}
        for k, v in value.items():
            ks = str(k).strip()
            vs = str(v).strip()
            if ks and vs:
                out[ks] = vs
        return out
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return {}
        try:
            data = json.loads(s)
        except ValueError:
            return {}
        return _coerce_headers(data)
    return {}


def _coerce_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        s = value.strip().lower()
        if s in ("1", "true", "yes", "on", "y"):
            return True
        if s in ("0", "false", "no", "off", "n", ""):
            return False
    return default


def _coerce_str(value: object, default: str, *, strip: bool = True, max_len: int | None = None) -> str:
    if value is None:
        out = default
    elif isinstance(value, str):
        out = value
    else:
        out = str(value)
    if strip:
        out = out.strip()
    if max_len is not None and max_len >= 0:
        out = out[:max_len]
    return out


def _coerce_int_in_range(value: object, default: int, *, min_v: int | None = None, max_v: int | None = None) -> int:
    try:
        out = int(float(value))
    except (TypeError, ValueError):
        out = int(default)
    if min_v is not None and out < min_v:
        out = min_v
    if max_v is not None and out > max_v:
        out = max_v
    return out


def _coerce_float_in_range(
    value: object,
    default: float,
    *,
    min_v: float | None = None,
    max_v: float | None = None,
) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        out = float(default)
    if min_v is not None and out < min_v:
        out = min_v
    if max_v is not None and out > max_v:
        out = max_v
    return out


def _coerce_choice(value: object, choices: set[str], default: str) -> str:
    s = _coerce_str(value, default).lower()
    return s if s in choices else default


def _coerce_str_list(value: object, default: list[str], *, max_items: int = 16) -> list[str]:
    if not isinstance(value, list):
        return list(default)
    out: list[str] = []
    for item in value:
        s = _coerce_str(item, "", max_len=512)
        if s and s not in out:
            out.append(s)
        if len(out) >= max_items:
            break
    return out or list(default)


def _sanitize_api_route_entry(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None

    base_url_raw = _coerce_str(value.get("base_url"), "", max_len=2048)
    provider = _normalize_api_provider(_coerce_str(value.get("provider"), ""))
    inferred_provider = _infer_provider_from_base_url(base_url_raw)
    if provider == "custom" and inferred_provider != "custom":
        provider = inferred_provider
    preset = _API_PROVIDER_PRESETS.get(provider, {})

    base_url = base_url_raw or str(preset.get("base_url") or "")
    model = _coerce_str(
        value.get("model"),
        str(preset.get("model") or DEFAULT_CONFIG["model"]),
        max_len=512,
    ) or str(DEFAULT_CONFIG["model"])
    if not base_url:
        return None

    return {
        "provider": provider,
        "api_key": _coerce_str(value.get("api_key"), "", max_len=4096),
        "base_url": base_url,
        "model": model,
        "api_extra_headers": _coerce_headers(value.get("api_extra_headers")),
        "enabled": _coerce_bool(value.get("enabled"), True),
    }


def _coerce_api_routes_list(value: object) -> list[dict[str, object]]:
    if not isinstance(value, list):
        return []
    out: list[dict[str, object]] = []
    for raw in value:
        item = _sanitize_api_route_entry(raw)
        if not item:
            continue
        out.append(item)
        if len(out) >= 8:
            break
    return out


def sanitize_config_values(raw: dict | None, *, base: dict | None = None) -> dict:
    raw_dict = raw if isinstance(raw, dict) else {}
    src: dict[str, object] = {}
    if isinstance(base, dict):
        src.update(base)
    if raw_dict:
        src.update(raw_dict)

    provider = _normalize_api_provider(_coerce_str(src.get("api_provider"), str(DEFAULT_CONFIG["api_provider"])))
    base_url_raw = _coerce_str(src.get("base_url"), str(DEFAULT_CONFIG["base_url"]), max_len=2048)
    inferred_provider = _infer_provider_from_base_url(base_url_raw)
    if provider == "custom" and inferred_provider != "custom":
        provider = inferred_provider

    out: dict[str, object] = dict(DEFAULT_CONFIG)

    out["api_provider"] = provider
    out["api_key"] = _coerce_str(src.get("api_key"), "", max_len=4096)
    out["base_url"] = base_url_raw or str(DEFAULT_CONFIG["base_url"])
    out["model"] = _coerce_str(src.get("model"), str(DEFAULT_CONFIG["model"]), max_len=512) or str(DEFAULT_CONFIG["model"])
    out["fast_model"] = (
        _coerce_str(src.get("fast_model"), str(DEFAULT_CONFIG["fast_model"]), max_len=512)
        or str(DEFAULT_CONFIG["fast_model"])
    )
    out["available_models"] = _coerce_str_list(src.get("available_models"), list(DEFAULT_CONFIG["available_models"]))
    out["api_extra_headers"] = _coerce_headers(src.get("api_extra_headers"))
    out["api_fallback_enabled"] = _coerce_bool(src.get("api_fallback_enabled"), True)
    out["api_routes"] = _coerce_api_routes_list(src.get("api_routes"))

    out["temperature"] = _coerce_float_in_range(src.get("temperature"), 1.0, min_v=0.0, max_v=2.0)
    out["top_p"] = _coerce_float_in_range(src.get("top_p"), 0.95, min_v=0.0, max_v=1.0)
    out["top_k"] = _coerce_int_in_range(src.get("top_k"), 64, min_v=1, max_v=1000)
    out["max_output_tokens"] = _coerce_int_in_range(src.get("max_output_tokens"), 65536, min_v=16, max_v=1_000_000)
    out["thinking_enabled"] = _coerce_bool(src.get("thinking_enabled"), True)
    out["thinking_level"] = _coerce_choice(src.get("thinking_level"), {"low", "high"}, "high")
    threshold = _coerce_str(src.get("safety_threshold"), "BLOCK_NONE").upper()
    out["safety_threshold"] = threshold if threshold in _SAFETY_THRESHOLDS else "BLOCK_NONE"
    out["google_search_enabled"] = _coerce_bool(src.get("google_search_enabled"), True)
    out["analysis_max_output_tokens"] = _coerce_int_in_range(
        src.get("analysis_max_output_tokens"), 2048, min_v=64, max_v=65536
    )
    out["custom_instructions"] = _coerce_str(src.get("custom_instructions"), "", strip=False, max_len=12000)

    out["suggestions_enabled"] = _coerce_bool(src.get("suggestions_enabled"), True)
    out["suggestion_debounce_seconds"] = _coerce_float_in_range(
        src.get("suggestion_debounce_seconds"), 3.0, min_v=0.0, max_v=60.0
    )
    out["suggestion_ttl_seconds"] = _coerce_float_in_range(src.get("suggestion_ttl_seconds"), 20.0, min_v=0.0, max_v=600.0)
    out["suggestion_min_context_chars"] = _coerce_int_in_range(
        src.get("suggestion_min_context_chars"), 50, min_v=0, max_v=5000
    )
    out["suggestion_min_confidence"] = _coerce_float_in_range(
        src.get("suggestion_min_confidence"), 0.7, min_v=0.0, max_v=1.0
    )
    out["suggestion_max_active"] = _coerce_int_in_range(src.get("suggestion_max_active"), 3, min_v=1, max_v=10)
    out["suggestion_recent_topics_max"] = _coerce_int_in_range(
        src.get("suggestion_recent_topics_max"), 10, min_v=1, max_v=100
    )

    out["context_max_phrases"] = _coerce_int_in_range(src.get("context_max_phrases"), 10, min_v=1, max_v=100)
    out["context_max_chars"] = _coerce_int_in_range(src.get("context_max_chars"), 500, min_v=50, max_v=20000)
    out["context_keep_words"] = _coerce_int_in_range(src.get("context_keep_words"), 50, min_v=1, max_v=2000)
    out["context_fallback_trim_words"] = _coerce_int_in_range(
        src.get("context_fallback_trim_words"), 30, min_v=1, max_v=2000
    )

    out["whisper_model_size"] = _coerce_str(src.get("whisper_model_size"), "tiny", max_len=64) or "tiny"
    out["whisper_device"] = _coerce_choice(src.get("whisper_device"), {"cpu", "cuda"}, "cpu")
    out["transcription_sample_rate"] = _coerce_int_in_range(
        src.get("transcription_sample_rate"), 16000, min_v=8000, max_v=48000
    )
    out["transcription_chunk_seconds"] = _coerce_float_in_range(
        src.get("transcription_chunk_seconds"), 3.0, min_v=1.0, max_v=15.0
    )
    out["transcription_interim_results"] = _coerce_bool(src.get("transcription_interim_results"), True)

    out["verbose_logging"] = _coerce_bool(src.get("verbose_logging"), False)
    return out


def load_config(path: Path | None = None) -> dict:
    cfg_path = path or get_config_path()
    loaded: dict = {}
    try:
        if cfg_path.is_file():
            data = json.loads(cfg_path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                loaded = data
    except (OSError, ValueError):
        logger.exception("Failed to load settings file")
    return sanitize_config_values(loaded, base=DEFAULT_CONFIG)


def save_config(cfg: dict, path: Path | None = None) -> None:
    cfg_path = path or get_config_path()
    clean_cfg = sanitize_config_values(cfg, base=DEFAULT_CONFIG)
    try:
        cfg_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = cfg_path.with_suffix(cfg_path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(clean_cfg, indent=2), encoding="utf-8")
        tmp_path.replace(cfg_path)
    except OSError:
        logger.exception("Failed to save settings file")
        raise


def _resolve_api_key_for_provider(provider: str, explicit_key: object) -> str:
    api_key = _coerce_str(explicit_key, "", max_len=4096)
    if api_key:
        return api_key

    preset = _API_PROVIDER_PRESETS.get(_normalize_api_provider(provider), {})
    env_name = preset.get("api_key_env")
    if isinstance(env_name, str) and env_name:
        return (os.environ.get(env_name) or "").strip()
    return ""


def effective_api_routes(cfg: dict) -> list[dict[str, object]]:
    """Primary route plus fallbacks, keyed and de-duplicated; routes without a key are dropped."""
    primary = {
        "provider": cfg.get("api_provider"),
        "api_key": cfg.get("api_key"),
        "base_url": cfg.get("base_url"),
        "model": cfg.get("model"),
        "api_extra_headers": cfg.get("api_extra_headers"),
        "enabled": True,
    }
    candidates = [primary] + _coerce_api_routes_list(cfg.get("api_routes"))
    if not _coerce_bool(cfg.get("api_fallback_enabled"), True):
        candidates = candidates[:1]

    out: list[dict[str, object]] = []
    seen: set[tuple[str, str, str, str]] = set()
    for item in candidates:
        if not _coerce_bool(item.get("enabled"), True):
            continue
        base_url_raw = _coerce_str(item.get("base_url"), "", max_len=2048)
        provider = _normalize_api_provider(_coerce_str(item.get("provider"), ""))
        inferred = _infer_provider_from_base_url(base_url_raw)
        if provider == "custom" and inferred != "custom":
            provider = inferred
        preset = _API_PROVIDER_PRESETS.get(provider, {})
        base_url = base_url_raw or str(preset.get("base_url") or "")
        model = _coerce_str(item.get("model"), "", max_len=512) or str(preset.get("model") or DEFAULT_CONFIG["model"])
        api_key = _resolve_api_key_for_provider(provider, item.get("api_key"))
        if not api_key or not base_url:
            continue
        sig = (provider, base_url, model, api_key)
        if sig in seen:
            continue
        seen.add(sig)
        out.append(
            {
                "provider": provider,
                "api_key": api_key,
                "base_url": base_url,
                "model": model,
                "api_extra_headers": _coerce_headers(item.get("api_extra_headers")),
            }
        )
        if len(out) >= 8:
            break
    return out


def chat_generation_params(cfg: dict, *, model: str | None = None) -> GenerationParams:
    threshold = str(cfg.get("safety_threshold") or "BLOCK_NONE")
    return GenerationParams(
        model=str(model or cfg.get("model") or DEFAULT_CONFIG["model"]),
        temperature=float(cfg.get("temperature", 1.0)),
        top_p=float(cfg.get("top_p", 0.95)),
        top_k=int(cfg.get("top_k", 64)),
        max_output_tokens=int(cfg.get("max_output_tokens", 65536)),
        thinking_enabled=bool(cfg.get("thinking_enabled", True)),
        thinking_level=str(cfg.get("thinking_level") or "high"),
        safety_thresholds={category: threshold for category in SAFETY_CATEGORIES},
        tools=["google_search"] if cfg.get("google_search_enabled") else [],
    )


def analysis_generation_params(cfg: dict) -> GenerationParams:
    return GenerationParams(
        model=str(cfg.get("fast_model") or DEFAULT_CONFIG["fast_model"]),
        temperature=0.3,
        max_output_tokens=int(cfg.get("analysis_max_output_tokens", 2048)),
        thinking_enabled=False,
    )
