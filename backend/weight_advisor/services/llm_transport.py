"""
LLM调用 - 直连厂商接口或经代理转发
提供统一的 call_model 接口，返回助手消息文本
"""
from typing import Any, Dict, List, Optional, Tuple
import asyncio
import json
import time

import httpx
import structlog
from openai import AsyncOpenAI, APIConnectionError, APIStatusError, APITimeoutError
from pydantic import BaseModel
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from weight_advisor.core.config import Settings, settings
from weight_advisor.services.credential_resolver import CredentialResolver
from weight_advisor.services.failure_simulator import FailureSimulator
from weight_advisor.utils.pipeline_exception import ConfigurationError, ResponseShapeError, TransportError

logger = structlog.get_logger()


# 支持的模型（直连模式使用OpenAI兼容接口）
SUPPORTED_MODELS: Dict[str, Dict[str, Any]] = {
    "deepseek": {
        "name": "DeepSeek",
        "model": "deepseek-chat",
        "base_url": "https://api.deepseek.com/v1",
        "temperature": 0.3,
    },
    "openai": {
        "name": "OpenAI",
        "model": "gpt-3.5-turbo",
        "base_url": "https://api.openai.com/v1",
        "temperature": 0.7,
    },
    "qwen": {
        "name": "通义千问",
        "model": "qwen-turbo",
        "base_url": "https://dashscope.aliyuncs.com/compatible-mode/v1",
        "temperature": 0.5,
    },
}

API_CONFIG_IDS = ("default", "api2", "api3")


class EndpointConfig(BaseModel):
    """单个API配置（只读）"""
    id: str = "default"
    url: str
    use_proxy: bool = False
    model_type: str = "deepseek"
    model: str = "deepseek-chat"
    temperature: float = 0.3
    max_tokens: int = 4000


def build_endpoint_configs(config: Settings = settings) -> List[EndpointConfig]:
    """
    根据应用配置生成API配置列表

    Returns:
        启用多API时为 default/api2/api3 三个配置，否则只有 default
    """
    model_type = config.DEFAULT_MODEL_TYPE if config.DEFAULT_MODEL_TYPE in SUPPORTED_MODELS else "deepseek"
    model_info = SUPPORTED_MODELS[model_type]
    api_ids = API_CONFIG_IDS if config.MULTI_API_ENABLED else API_CONFIG_IDS[:1]

    return [
        EndpointConfig(
            id=api_id,
            url=config.LLM_PROXY_URL if config.LLM_USE_PROXY else model_info["base_url"],
            use_proxy=config.LLM_USE_PROXY,
            model_type=model_type,
            model=model_info["model"],
            temperature=model_info["temperature"],
            max_tokens=config.LLM_MAX_TOKENS,
        )
        for api_id in api_ids
    ]


def extract_assistant_text(data: Any) -> str:
    """
    从响应体中提取助手消息文本

    支持 choices[0].message.content（OpenAI兼容）和扁平的 text 字段

    Raises:
        ResponseShapeError: 两种结构都不存在
    """
    if isinstance(data, dict):
        choices = data.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message")
            if isinstance(message, dict) and isinstance(message.get("content"), str):
                return message["content"].strip()
        if isinstance(data.get("text"), str):
            return data["text"].strip()

    raise ResponseShapeError(json.dumps(data, ensure_ascii=False, default=str)[:500])


def _response_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        raise ResponseShapeError(response.text[:500])


def _is_retryable_error(exception: BaseException) -> bool:
    """429限流、5xx服务器错误、超时和网络错误可重试"""
    return isinstance(exception, TransportError) and exception.retryable


class LLMTransport:
    """LLM调用封装"""

    def __init__(
        self,
        credential_resolver: CredentialResolver,
        default_config: Optional[EndpointConfig] = None,
        timeout: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        failure_simulator: Optional[FailureSimulator] = None,
        enabled: Optional[bool] = None
    ):
        """
        初始化LLM调用

        Args:
            credential_resolver: API密钥解析器
            default_config: 未指定配置时使用的API配置，为None时取配置列表的第一个
            timeout: 单次调用超时（秒），为None时从配置读取
            retry_attempts: 可重试错误的最大尝试次数，为None时从配置读取
            http_client: 自定义httpx客户端（测试时可注入MockTransport）
            failure_simulator: 失败模拟，为None时按配置决定是否启用
            enabled: 是否启用LLM调用，为None时从配置读取
        """
        self.credential_resolver = credential_resolver
        self.default_config = default_config or build_endpoint_configs()[0]
        self.timeout = settings.LLM_REQUEST_TIMEOUT if timeout is None else timeout
        self.retry_attempts = max(1, settings.LLM_RETRY_ATTEMPTS if retry_attempts is None else retry_attempts)
        self.http_client = http_client
        self.failure_simulator = failure_simulator or FailureSimulator.get_instance()
        self.enabled = settings.USE_LLM if enabled is None else enabled
        self._openai_clients: Dict[Tuple[str, str], AsyncOpenAI] = {}

    def with_credentials(self, credential_resolver: CredentialResolver) -> "LLMTransport":
        """返回使用另一密钥解析器、其余设置相同的实例"""
        return LLMTransport(
            credential_resolver=credential_resolver,
            default_config=self.default_config,
            timeout=self.timeout,
            retry_attempts=self.retry_attempts,
            http_client=self.http_client,
            failure_simulator=self.failure_simulator,
            enabled=self.enabled,
        )

    def has_credentials(self, config: EndpointConfig) -> bool:
        """代理模式由代理解析密钥，直连模式需要本地可用的密钥"""
        if config.use_proxy:
            return True
        return self.credential_resolver.resolve(config.id, config.model_type) is not None

    def available_configs(self, configs: List[EndpointConfig]) -> List[EndpointConfig]:
        """过滤出可以发起调用的API配置"""
        return [config for config in configs if self.has_credentials(config)]

    async def call_model(
        self,
        prompt: str,
        temperature: Optional[float] = None,
        config: Optional[EndpointConfig] = None,
        user_api_key: Optional[str] = None
    ) -> str:
        """
        调用LLM

        Args:
            prompt: 提示词
            temperature: 温度参数，为None时使用配置中的默认值
            config: API配置，为None时使用默认配置
            user_api_key: 调用方传入的密钥（优先级最高）

        Returns:
            助手消息文本

        Raises:
            TransportError: 非2xx响应、超时或网络错误
            ResponseShapeError: 响应结构无法识别
            ConfigurationError: 直连模式下没有可用的API密钥
        """
        config = config or self.default_config
        if not self.enabled:
            raise TransportError(0, "LLM服务未启用")

        api_key = self.credential_resolver.resolve(config.id, config.model_type, user_api_key)
        if not config.use_proxy and not api_key:
            raise ConfigurationError(
                f"API密钥未配置，请设置 {config.model_type.upper()} 的API密钥",
                {"api_id": config.id, "model_type": config.model_type}
            )

        temperature = config.temperature if temperature is None else temperature
        mode = "proxy" if config.use_proxy else "direct"
        start_time = time.time()

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.retry_attempts),
                wait=wait_exponential(multiplier=1, min=1, max=8),
                retry=retry_if_exception(_is_retryable_error),
                reraise=True
            ):
                with attempt:
                    if self.failure_simulator:
                        self.failure_simulator.maybe_fail(config.id)
                    data = await self._post_with_timeout(prompt, temperature, config, api_key)
            text = extract_assistant_text(data)
        except TransportError as e:
            logger.error("LLM调用失败",
                         api_id=config.id,
                         mode=mode,
                         status=e.status,
                         error=e.error_message,
                         duration_ms=int((time.time() - start_time) * 1000))
            raise

        logger.info("LLM调用成功",
                    api_id=config.id,
                    mode=mode,
                    model=config.model,
                    temperature=temperature,
                    response_length=len(text),
                    duration_ms=int((time.time() - start_time) * 1000))
        return text

    async def _post_with_timeout(
        self,
        prompt: str,
        temperature: float,
        config: EndpointConfig,
        api_key: Optional[str]
    ) -> Any:
        try:
            if config.use_proxy:
                request = self._post_proxy(prompt, temperature, config, api_key)
            else:
                request = self._post_direct(prompt, temperature, config, api_key)
            return await asyncio.wait_for(request, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise TransportError(0, "请求超时", f"超过 {self.timeout} 秒未返回")

    async def _post_proxy(
        self,
        prompt: str,
        temperature: float,
        config: EndpointConfig,
        api_key: Optional[str]
    ) -> Any:
        """经代理转发，代理负责构造各厂商的请求体"""
        body = {
            "prompt": prompt,
            "temperature": temperature,
            "apiId": config.id,
            "userApiKey": api_key or "",
            "modelType": config.model_type,
            "max_tokens": config.max_tokens,
        }
        try:
            if self.http_client is not None:
                response = await self.http_client.post(config.url, json=body, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(config.url, json=body)
        except httpx.TimeoutException as e:
            raise TransportError(0, "请求超时", str(e))
        except httpx.HTTPError as e:
            raise TransportError(0, "网络连接失败", str(e))

        if not response.is_success:
            raise TransportError(response.status_code, response.reason_phrase, response.text)
        return _response_json(response)

    async def _post_direct(
        self,
        prompt: str,
        temperature: float,
        config: EndpointConfig,
        api_key: str
    ) -> Any:
        """直连OpenAI兼容接口"""
        client = self._get_openai_client(api_key, config.url)
        try:
            response = await client.chat.completions.with_raw_response.create(
                model=config.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=temperature,
                max_tokens=config.max_tokens,
            )
        except APIStatusError as e:
            raise TransportError(e.status_code, e.response.reason_phrase, e.response.text)
        except APITimeoutError as e:
            raise TransportError(0, "请求超时", str(e))
        except APIConnectionError as e:
            raise TransportError(0, "网络连接失败", str(e))

        return _response_json(response.http_response)

    def _get_openai_client(self, api_key: str, base_url: str) -> AsyncOpenAI:
        key = (api_key, base_url)
        if key not in self._openai_clients:
            self._openai_clients[key] = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url,
                timeout=self.timeout,
                max_retries=0,  # 重试由tenacity统一处理
                http_client=self.http_client,
            )
        return self._openai_clients[key]


# 全局LLM调用实例（延迟初始化）
_llm_transport: Optional[LLMTransport] = None


def get_llm_transport() -> LLMTransport:
    """获取LLM调用实例（单例模式）"""
    global _llm_transport
    if _llm_transport is None:
        _llm_transport = LLMTransport(CredentialResolver.from_settings())
    return _llm_transport
