"""
API密钥解析
优先级：调用方传入 > 用户自定义密钥 > 本地配置密钥 > 环境变量
"""
from typing import Dict, Mapping, Optional

from weight_advisor.core.config import Settings, settings

PLACEHOLDER_KEYS = {"your-api-key-here", "sk-xxx"}
SUPPORTED_MODEL_TYPES = ("deepseek", "openai", "qwen")
_API_ID_SUFFIXES = {"api2": "_2", "api3": "_3"}


def is_usable_key(api_key: Optional[str]) -> bool:
    """空字符串和示例占位密钥视为未配置"""
    return bool(api_key) and api_key.strip() not in PLACEHOLDER_KEYS


def key_variable_name(api_id: str, model_type: str) -> str:
    """密钥变量名，如 default/deepseek -> DEEPSEEK_API_KEY，api2/qwen -> QWEN_API_KEY_2"""
    return f"{model_type.upper()}_API_KEY{_API_ID_SUFFIXES.get(api_id, '')}"


class CredentialResolver:
    """API密钥解析器，在构造LLMTransport时注入"""

    def __init__(
        self,
        user_keys: Optional[Mapping[str, str]] = None,
        local_keys: Optional[Mapping[str, str]] = None,
        environment_keys: Optional[Mapping[str, str]] = None
    ):
        """
        Args:
            user_keys: 用户自定义密钥，键为 {modelType}_api_key_{apiId}、{modelType}_api_key 或 deepseek_api_key
            local_keys: 本地配置密钥，键为 DEEPSEEK_API_KEY_2 形式的变量名
            environment_keys: 环境变量密钥，键同上
        """
        self.user_keys: Dict[str, str] = dict(user_keys or {})
        self.local_keys: Dict[str, str] = dict(local_keys or {})
        self.environment_keys: Dict[str, str] = dict(environment_keys or {})

    @classmethod
    def from_settings(
        cls,
        config: Settings = settings,
        user_keys: Optional[Mapping[str, str]] = None
    ) -> "CredentialResolver":
        """根据应用配置创建解析器"""
        environment_keys = {}
        for model_type in SUPPORTED_MODEL_TYPES:
            for api_id in ("default", "api2", "api3"):
                name = key_variable_name(api_id, model_type)
                environment_keys[name] = getattr(config, name, "")

        return cls(
            user_keys=user_keys,
            local_keys=config.LOCAL_API_KEYS if config.USE_LOCAL_API_KEYS else None,
            environment_keys=environment_keys
        )

    def with_user_keys(self, user_keys: Optional[Mapping[str, str]]) -> "CredentialResolver":
        """返回叠加了用户自定义密钥的新解析器（不修改当前实例）"""
        if not user_keys:
            return self
        merged = {**self.user_keys, **user_keys}
        return CredentialResolver(merged, self.local_keys, self.environment_keys)

    def resolve(
        self,
        api_id: str = "default",
        model_type: str = "deepseek",
        caller_key: Optional[str] = None
    ) -> Optional[str]:
        """
        解析API密钥

        Returns:
            可用的密钥；都未配置时返回None
        """
        if is_usable_key(caller_key):
            return caller_key

        for user_key_name in (f"{model_type}_api_key_{api_id}", f"{model_type}_api_key", "deepseek_api_key"):
            candidate = self.user_keys.get(user_key_name)
            if is_usable_key(candidate):
                return candidate

        name = key_variable_name(api_id, model_type)
        for source in (self.local_keys, self.environment_keys):
            candidate = source.get(name)
            if is_usable_key(candidate):
                return candidate

        return None
