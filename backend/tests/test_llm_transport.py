"""
LLMTransport测试（代理模式和直连模式）
"""
import asyncio
import json

import httpx
import pytest

from weight_advisor.services.credential_resolver import CredentialResolver, is_usable_key, key_variable_name
from weight_advisor.services.failure_simulator import FailureSimulator, MockFailureType
from weight_advisor.services.llm_transport import (
    EndpointConfig,
    LLMTransport,
    build_endpoint_configs,
    extract_assistant_text,
)
from weight_advisor.core.config import Settings
from weight_advisor.utils.pipeline_exception import ConfigurationError, ResponseShapeError, TransportError

PROXY_URL = "http://llm-proxy.test/api/llm"
DIRECT_URL = "https://llm.test/v1"


def _completion(content):
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 0,
        "model": "deepseek-chat",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
    }


def _transport(handler, config, resolver=None, **kwargs):
    kwargs.setdefault("retry_attempts", 1)
    return LLMTransport(
        resolver or CredentialResolver(),
        default_config=config,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        enabled=True,
        **kwargs
    )


def test_extract_assistant_text():
    """测试两种响应结构的文本提取"""
    assert extract_assistant_text(_completion("  结果  ")) == "结果"
    assert extract_assistant_text({"text": "扁平结果"}) == "扁平结果"

    with pytest.raises(ResponseShapeError):
        extract_assistant_text({"data": "其他结构"})
    with pytest.raises(ResponseShapeError):
        extract_assistant_text({"choices": []})


@pytest.mark.asyncio
async def test_proxy_request_body():
    """测试代理模式请求体"""
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion("代理结果"))

    config = EndpointConfig(id="api2", url=PROXY_URL, use_proxy=True, max_tokens=2000)
    transport = _transport(handler, config)

    text = await transport.call_model("提示词", temperature=0.4)

    assert text == "代理结果"
    assert captured["url"] == PROXY_URL
    assert captured["body"] == {
        "prompt": "提示词",
        "temperature": 0.4,
        "apiId": "api2",
        "userApiKey": "",
        "modelType": "deepseek",
        "max_tokens": 2000,
    }


@pytest.mark.asyncio
async def test_proxy_passes_user_key_and_flat_text():
    """测试代理模式传递用户密钥并支持text字段"""
    captured = {}

    def handler(request):
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"text": "扁平结果"})

    config = EndpointConfig(url=PROXY_URL, use_proxy=True)
    resolver = CredentialResolver(user_keys={"deepseek_api_key": "sk-user"})
    transport = _transport(handler, config, resolver)

    assert await transport.call_model("提示词") == "扁平结果"
    assert captured["body"]["userApiKey"] == "sk-user"
    # 未指定温度时使用配置中的默认值
    assert captured["body"]["temperature"] == config.temperature


@pytest.mark.asyncio
async def test_proxy_server_error():
    """测试非2xx响应抛出TransportError"""
    def handler(request):
        return httpx.Response(500, text="upstream failed")

    transport = _transport(handler, EndpointConfig(url=PROXY_URL, use_proxy=True))

    with pytest.raises(TransportError) as exc_info:
        await transport.call_model("提示词")
    assert exc_info.value.status == 500
    assert exc_info.value.retryable is True
    assert exc_info.value.error_details["body"] == "upstream failed"


@pytest.mark.asyncio
async def test_proxy_unknown_shape():
    """测试无法识别的响应结构"""
    def handler(request):
        return httpx.Response(200, json={"result": "无内容"})

    transport = _transport(handler, EndpointConfig(url=PROXY_URL, use_proxy=True))

    with pytest.raises(ResponseShapeError) as exc_info:
        await transport.call_model("提示词")
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_retry_on_service_unavailable():
    """测试503后重试成功"""
    responses = [httpx.Response(503, text="busy"), httpx.Response(200, json=_completion("重试成功"))]
    calls = []

    def handler(request):
        calls.append(request)
        return responses[len(calls) - 1]

    transport = _transport(handler, EndpointConfig(url=PROXY_URL, use_proxy=True), retry_attempts=2)

    assert await transport.call_model("提示词") == "重试成功"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_no_retry_on_bad_request():
    """测试400错误不重试"""
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, text="bad request")

    transport = _transport(handler, EndpointConfig(url=PROXY_URL, use_proxy=True), retry_attempts=3)

    with pytest.raises(TransportError) as exc_info:
        await transport.call_model("提示词")
    assert exc_info.value.status == 400
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_timeout():
    """测试调用超时返回状态码0"""
    async def handler(request):
        await asyncio.sleep(1)
        return httpx.Response(200, json=_completion("太慢了"))

    transport = _transport(handler, EndpointConfig(url=PROXY_URL, use_proxy=True), timeout=0.05)

    with pytest.raises(TransportError) as exc_info:
        await transport.call_model("提示词")
    assert exc_info.value.status == 0


@pytest.mark.asyncio
async def test_direct_request():
    """测试直连模式使用OpenAI兼容接口"""
    captured = {}

    def handler(request):
        captured["path"] = request.url.path
        captured["authorization"] = request.headers["authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion("直连结果"))

    resolver = CredentialResolver(environment_keys={"DEEPSEEK_API_KEY": "sk-env"})
    transport = _transport(handler, EndpointConfig(url=DIRECT_URL), resolver)

    text = await transport.call_model("提示词", temperature=0.2)

    assert text == "直连结果"
    assert captured["path"] == "/v1/chat/completions"
    assert captured["authorization"] == "Bearer sk-env"
    assert captured["body"]["model"] == "deepseek-chat"
    assert captured["body"]["messages"] == [{"role": "user", "content": "提示词"}]
    assert captured["body"]["temperature"] == 0.2
    assert captured["body"]["max_tokens"] == 4000


@pytest.mark.asyncio
async def test_direct_server_error():
    """测试直连模式错误状态码转换为TransportError"""
    def handler(request):
        return httpx.Response(502, json={"error": {"message": "bad gateway"}})

    resolver = CredentialResolver(environment_keys={"DEEPSEEK_API_KEY": "sk-env"})
    transport = _transport(handler, EndpointConfig(url=DIRECT_URL), resolver)

    with pytest.raises(TransportError) as exc_info:
        await transport.call_model("提示词")
    assert exc_info.value.status == 502


@pytest.mark.asyncio
async def test_direct_missing_key():
    """测试直连模式没有密钥时抛出配置错误且不发请求"""
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json=_completion("不应调用"))

    transport = _transport(handler, EndpointConfig(url=DIRECT_URL))

    with pytest.raises(ConfigurationError):
        await transport.call_model("提示词")
    assert calls == []
    assert transport.has_credentials(EndpointConfig(url=DIRECT_URL)) is False
    assert transport.has_credentials(EndpointConfig(url=PROXY_URL, use_proxy=True)) is True


@pytest.mark.asyncio
async def test_disabled_transport():
    """测试关闭LLM调用时直接失败"""
    transport = LLMTransport(CredentialResolver(), default_config=EndpointConfig(url=PROXY_URL, use_proxy=True),
                             enabled=False)

    with pytest.raises(TransportError) as exc_info:
        await transport.call_model("提示词")
    assert exc_info.value.status == 0


@pytest.mark.asyncio
async def test_failure_simulator():
    """测试失败模拟在HTTP调用前注入429"""
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json=_completion("不应调用"))

    simulator = FailureSimulator(MockFailureType.RATE_LIMIT, failure_probability=1.0, enabled=True)
    transport = _transport(handler, EndpointConfig(url=PROXY_URL, use_proxy=True), failure_simulator=simulator)

    with pytest.raises(TransportError) as exc_info:
        await transport.call_model("提示词")
    assert exc_info.value.status == 429
    assert calls == []


def test_failure_simulator_disabled():
    """测试未启用失败模拟时不失败"""
    simulator = FailureSimulator(MockFailureType.SERVER_ERROR, failure_probability=1.0, enabled=False)
    assert simulator.should_fail() is False
    simulator.maybe_fail()


def test_credential_precedence():
    """测试密钥优先级：调用方 > 用户自定义 > 本地配置 > 环境变量"""
    resolver = CredentialResolver(
        user_keys={"qwen_api_key_api2": "sk-user-qwen-2"},
        local_keys={"DEEPSEEK_API_KEY_2": "sk-local-2"},
        environment_keys={"DEEPSEEK_API_KEY_2": "sk-env-2", "DEEPSEEK_API_KEY": "sk-env"},
    )

    assert resolver.resolve("api2", "deepseek", caller_key="sk-caller") == "sk-caller"
    assert resolver.resolve("api2", "qwen") == "sk-user-qwen-2"
    assert resolver.resolve("api2", "deepseek") == "sk-local-2"
    assert resolver.resolve("default", "deepseek") == "sk-env"
    assert resolver.resolve("api3", "openai") is None


def test_credential_user_key_fallback_names():
    """测试用户密钥按模型、通用名称依次查找"""
    resolver = CredentialResolver(user_keys={"deepseek_api_key": "sk-generic"})
    assert resolver.resolve("api3", "qwen") == "sk-generic"

    layered = resolver.with_user_keys({"qwen_api_key": "sk-qwen"})
    assert layered.resolve("api3", "qwen") == "sk-qwen"
    assert resolver.resolve("api3", "qwen") == "sk-generic"
    assert resolver.with_user_keys(None) is resolver


def test_placeholder_keys_ignored():
    """测试占位密钥视为未配置"""
    assert is_usable_key("your-api-key-here") is False
    assert is_usable_key("") is False
    assert is_usable_key(None) is False
    assert is_usable_key("sk-real") is True

    resolver = CredentialResolver(local_keys={"DEEPSEEK_API_KEY": "sk-xxx"}, environment_keys={"DEEPSEEK_API_KEY": "sk-env"})
    assert resolver.resolve() == "sk-env"


def test_key_variable_name():
    """测试密钥变量名"""
    assert key_variable_name("default", "deepseek") == "DEEPSEEK_API_KEY"
    assert key_variable_name("api2", "qwen") == "QWEN_API_KEY_2"
    assert key_variable_name("api3", "openai") == "OPENAI_API_KEY_3"


def test_from_settings():
    """测试根据配置创建密钥解析器"""
    config = Settings(DEEPSEEK_API_KEY_3="sk-env-3", USE_LOCAL_API_KEYS=True,
                      LOCAL_API_KEYS={"DEEPSEEK_API_KEY_3": "sk-local-3"})
    resolver = CredentialResolver.from_settings(config, user_keys={"deepseek_api_key_api3": "sk-user-3"})

    assert resolver.resolve("api3") == "sk-user-3"
    assert CredentialResolver.from_settings(config).resolve("api3") == "sk-local-3"
    assert CredentialResolver.from_settings(Settings(DEEPSEEK_API_KEY_3="sk-env-3")).resolve("api3") == "sk-env-3"


def test_build_endpoint_configs():
    """测试API配置列表生成"""
    configs = build_endpoint_configs(Settings(LLM_USE_PROXY=True, MULTI_API_ENABLED=True, DEFAULT_MODEL_TYPE="qwen"))
    assert [c.id for c in configs] == ["default", "api2", "api3"]
    assert all(c.use_proxy and c.model == "qwen-turbo" for c in configs)

    single = build_endpoint_configs(Settings(MULTI_API_ENABLED=False, DEFAULT_MODEL_TYPE="unknown"))
    assert len(single) == 1
    assert single[0].model_type == "deepseek"
    assert single[0].url == "https://api.deepseek.com/v1"
