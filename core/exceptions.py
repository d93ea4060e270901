"""
Finish OS 异常定义模块。

定义系统中所有自定义异常的层次结构：
- FinishOSError: 基类，所有已知错误
- ValidationError: 用户输入校验失败（字段级）
- ConfigError: 配置文件错误
- StorageError: 持久化读写错误
- MigrationError: 数据迁移一致性错误
- NotFoundError: 引用的实体不存在
- LLMError: 模型调用相关错误
"""
from typing import List, Optional


class FinishOSError(Exception):
    """Finish OS 基础异常类。

    所有系统内已知错误都继承自此类。
    捕获此类可以处理所有预期的错误情况。
    """

    def __init__(self, message: str, hint: Optional[str] = None):
        """
        Args:
            message: 错误描述
            hint: 对用户的操作建议
        """
        super().__init__(message)
        self.message = message
        self.hint = hint

    def get_user_message(self) -> str:
        """返回用户友好的错误消息。"""
        if self.hint:
            return f"{self.message}\n💡 Hint: {self.hint}"
        return self.message


class ValidationError(FinishOSError):
    """用户输入校验失败。

    在变更入口处抛出，状态保持不变。
    """

    def __init__(self, field: str, message: str, hint: Optional[str] = None):
        super().__init__(message, hint)
        self.field = field

    def to_dict(self) -> dict:
        return {"field": self.field, "message": self.message, "hint": self.hint}


class ConfigError(FinishOSError):
    """配置文件错误。

    当配置文件缺失、格式错误或内容非法时抛出。
    """

    def __init__(self, message: str, config_path: Optional[str] = None):
        hint = f"Check the config file: {config_path}" if config_path else "Check the config file format"
        super().__init__(message, hint)
        self.config_path = config_path


class StorageError(FinishOSError):
    """持久化存储读写失败。"""

    def __init__(self, message: str, path: Optional[str] = None):
        hint = f"Check that {path} is readable and contains valid JSON" if path else None
        super().__init__(message, hint)
        self.path = path


class MigrationError(FinishOSError):
    """数据迁移前后的一致性校验失败。

    永远不向调用方传播：迁移层捕获后回退到 legacy 形态。
    """

    def __init__(self, errors: List[str]):
        super().__init__(f"Migration skipped: {len(errors)} consistency error(s)")
        self.errors = list(errors)


class LLMError(FinishOSError):
    """LLM 调用相关错误的基类。

    当模型调用失败时抛出，包含调用上下文信息。
    """

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
        endpoint: Optional[str] = None
    ):
        self.provider = provider or "unknown"
        self.model_name = model_name or "unknown"
        self.endpoint = endpoint

        context = f"[{self.provider}/{self.model_name}]"
        super().__init__(f"{context} {message}")


class LLMConnectionError(LLMError):
    """无法连接到 LLM 服务。"""

    def __init__(
        self,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
        endpoint: Optional[str] = None
    ):
        super().__init__("Cannot reach the model service", provider, model_name, endpoint)
        if provider == "ollama":
            self.hint = "Make sure Ollama is running (ollama serve)"
        else:
            self.hint = "Check that the model service is running"


class LLMTimeoutError(LLMError):
    """LLM 调用超时。"""

    def __init__(
        self,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
        endpoint: Optional[str] = None,
        timeout_seconds: Optional[float] = None
    ):
        message = "Model call timed out"
        if timeout_seconds:
            message = f"Model call timed out ({timeout_seconds}s)"
        super().__init__(message, provider, model_name, endpoint)
        self.timeout_seconds = timeout_seconds


class NotFoundError(ValidationError):
    """引用的实体不存在（目标 / 任务 / 奖励 / 想法）。"""

    def __init__(self, field: str, entity_id):
        super().__init__(field, f"{field} not found: {entity_id}")
        self.entity_id = entity_id
