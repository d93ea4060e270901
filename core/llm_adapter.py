"""
LLM Adapter for Finish OS.

文本生成是外部协作者：输入 prompt，输出纯文本或 "无结果"。
引擎从不依赖结构化输出；所有调用点都自带确定性的本地回退文案。

Supports: Ollama (local) and a rule-based degraded mode.
"""
import asyncio
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import yaml

from core.exceptions import (
    ConfigError,
    FinishOSError,
    LLMConnectionError,
    LLMError,
    LLMTimeoutError,
)
from core.logger import get_logger
from core.utils import compact_text

logger = get_logger("llm_adapter")

# 配置文件路径
CONFIG_DIR = Path(__file__).parent.parent / "config"
MODEL_CONFIG_PATH = CONFIG_DIR / "model.yaml"
LOCAL_MODEL_CONFIG_PATH = CONFIG_DIR / "local_model.yaml"

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


@dataclass
class TextRequest:
    """A single text-generation request."""
    prompt: str
    temperature: float = 0.7
    top_p: float = 0.9
    num_predict: int = 120
    max_len: int = 600


class BaseLLMAdapter(ABC):
    """Base class for LLM adapters."""

    provider = "unknown"

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.model_name = config.get("model_name", "unknown")

    @abstractmethod
    def generate(self, request: TextRequest, timeout: float) -> str:
        """
        Generate raw text.

        Raises:
            LLMError: 调用失败（连接、超时、HTTP 错误、响应格式错误）
        """
        pass

    def get_model_name(self) -> str:
        return self.model_name


class OllamaAdapter(BaseLLMAdapter):
    """Adapter for local Ollama models (/api/generate, non-streaming)."""

    provider = "ollama"

    def __init__(self, config: Dict[str, Any], transport: Optional[httpx.BaseTransport] = None):
        super().__init__(config)
        self.base_url = config.get("base_url", "http://localhost:11434").rstrip("/")
        self.model_name = config.get("model_name", "llama3.2")
        self.transport = transport

    def generate(self, request: TextRequest, timeout: float) -> str:
        payload = {
            "model": self.model_name,
            "prompt": request.prompt,
            "stream": False,
            "options": {
                "temperature": request.temperature,
                "top_p": request.top_p,
                "num_predict": request.num_predict,
            },
        }

        try:
            with httpx.Client(timeout=timeout, transport=self.transport) as client:
                response = client.post(f"{self.base_url}/api/generate", json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.ConnectError:
            raise LLMConnectionError(
                provider=self.provider,
                model_name=self.model_name,
                endpoint=self.base_url
            )
        except httpx.TimeoutException:
            raise LLMTimeoutError(
                provider=self.provider,
                model_name=self.model_name,
                endpoint=self.base_url,
                timeout_seconds=timeout
            )
        except httpx.HTTPStatusError as e:
            raise LLMError(
                message=f"HTTP error: {e.response.status_code}",
                provider=self.provider,
                model_name=self.model_name,
                endpoint=self.base_url
            )
        except (httpx.HTTPError, ValueError) as e:
            raise LLMError(
                message=f"Request failed: {e}",
                provider=self.provider,
                model_name=self.model_name,
                endpoint=self.base_url
            )

        text = data.get("response") if isinstance(data, dict) else None
        if not isinstance(text, str):
            raise LLMError(
                message="Response has no text",
                provider=self.provider,
                model_name=self.model_name,
                endpoint=self.base_url
            )
        return text


class RuleBasedAdapter(BaseLLMAdapter):
    """
    Degraded mode: produces no text, so every call site uses its fallback.
    """

    provider = "rule_based"

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.model_name = "rule_based"

    def generate(self, request: TextRequest, timeout: float) -> str:
        return ""


def load_model_config(profile_name: Optional[str] = None) -> Dict[str, Any]:
    """
    Load model configuration from YAML file.
    Priority: local_model.yaml > model.yaml

    Args:
        profile_name: Optional profile name. If None, uses active_profile from config.

    Returns:
        Configuration dict for the specified or active profile.

    Note:
        Supports ${ENV_VAR} syntax for environment variable expansion.
    """
    raw_config: Dict[str, Any] = {}
    source = LOCAL_MODEL_CONFIG_PATH if LOCAL_MODEL_CONFIG_PATH.exists() else MODEL_CONFIG_PATH

    if source.exists():
        try:
            with open(source, "r", encoding="utf-8") as f:
                raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}", str(source))

    if "profiles" in raw_config:
        profiles = raw_config["profiles"] or {}
        active_profile = (
            profile_name
            or os.environ.get("FINISH_OS_LLM_PROFILE")
            or raw_config.get("active_profile", "rule_based")
        )

        if active_profile not in profiles:
            logger.warning(f"Profile '{active_profile}' not found, using rule-based mode")
            return {"provider": "rule_based"}

        return _expand_env_vars(profiles[active_profile], source)

    # 兼容扁平结构
    if raw_config:
        return _expand_env_vars(raw_config, source)

    return {"provider": "rule_based"}


def _expand_env_vars(config: Dict[str, Any], source: Path) -> Dict[str, Any]:
    """Expand ${VAR} placeholders with environment variables."""
    result = {}
    for key, value in config.items():
        if isinstance(value, str):
            match = _ENV_PATTERN.match(value)
            if match:
                env_value = os.environ.get(match.group(1))
                if not env_value:
                    raise ConfigError(
                        f"'{key}' refers to unset environment variable {match.group(1)}",
                        str(source)
                    )
                result[key] = env_value
            else:
                result[key] = value
        elif isinstance(value, dict):
            result[key] = _expand_env_vars(value, source)
        else:
            result[key] = value
    return result


def create_llm_adapter(config: Optional[Dict[str, Any]] = None) -> BaseLLMAdapter:
    """
    Factory function to create the appropriate LLM adapter.

    Raises:
        ConfigError: 未知的 provider
    """
    if config is None:
        config = load_model_config()

    provider = str(config.get("provider", "rule_based")).lower()

    if provider == "ollama":
        return OllamaAdapter(config)
    elif provider == "rule_based":
        return RuleBasedAdapter(config)
    raise ConfigError(f"Unknown LLM provider: '{provider}'", str(MODEL_CONFIG_PATH))


# 单例：当前进程使用的适配器
_llm: Optional[BaseLLMAdapter] = None


def get_llm() -> BaseLLMAdapter:
    global _llm
    if _llm is None:
        _llm = create_llm_adapter()
        logger.info(f"LLM adapter initialized: {_llm.provider}/{_llm.get_model_name()}")
    return _llm


def set_llm(adapter: Optional[BaseLLMAdapter]) -> None:
    global _llm
    _llm = adapter


def reset_llm() -> None:
    """Reset the cached adapter (useful for testing or config changes)."""
    set_llm(None)


def generate_text(
    request: TextRequest,
    timeout: float,
    adapter: Optional[BaseLLMAdapter] = None,
) -> Optional[str]:
    """
    调用文本生成，永不抛异常。

    Returns:
        压缩后的文本（去控制字符、合并空白、超长省略号截断）；
        超时、失败或空响应时返回 None
    """
    if not request.prompt or not request.prompt.strip():
        return None

    try:
        llm = adapter or get_llm()
        raw = llm.generate(request, timeout)
    except LLMError as e:
        logger.warning(f"Text generation unavailable: {e.get_user_message()}")
        return None
    except FinishOSError as e:
        logger.warning(f"Text generation misconfigured: {e.get_user_message()}")
        return None
    except Exception as e:
        logger.warning(f"Text generation failed: {type(e).__name__}: {e}")
        return None

    text = compact_text(raw, request.max_len)
    return text or None


async def generate_text_async(
    request: TextRequest,
    timeout: float,
    adapter: Optional[BaseLLMAdapter] = None,
) -> Optional[str]:
    """generate_text 的协程版本，在工作线程中执行阻塞的 HTTP 调用。"""
    return await asyncio.to_thread(generate_text, request, timeout, adapter)
