"""
LLM调用失败模拟 - 用于演练各阶段的备用方案
仅在测试环境使用，生产环境必须禁用
"""
from typing import Optional
from enum import Enum
import random
import structlog

from weight_advisor.core.config import settings
from weight_advisor.utils.pipeline_exception import TransportError

logger = structlog.get_logger()


class MockFailureType(Enum):
    """Mock失败类型"""
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    UNAUTHORIZED = "unauthorized"
    BAD_REQUEST = "bad_request"
    SERVICE_UNAVAILABLE = "service_unavailable"


# 失败类型 -> (HTTP状态码, 状态描述)，状态码0表示未拿到HTTP响应
_FAILURE_RESPONSES = {
    MockFailureType.TIMEOUT: (0, "请求超时（模拟）"),
    MockFailureType.RATE_LIMIT: (429, "Too Many Requests"),
    MockFailureType.SERVER_ERROR: (500, "Internal Server Error"),
    MockFailureType.NETWORK_ERROR: (0, "网络连接失败（模拟）"),
    MockFailureType.UNAUTHORIZED: (401, "Unauthorized"),
    MockFailureType.BAD_REQUEST: (400, "Bad Request"),
    MockFailureType.SERVICE_UNAVAILABLE: (503, "Service Unavailable"),
}


class FailureSimulator:
    """按配置的概率在HTTP调用前注入失败"""

    def __init__(
        self,
        failure_type: Optional[MockFailureType] = None,
        failure_probability: Optional[float] = None,
        enabled: Optional[bool] = None
    ):
        """
        初始化失败模拟

        Args:
            failure_type: 失败类型，如果为None则从配置读取
            failure_probability: 失败概率（0.0-1.0），如果为None则从配置读取
            enabled: 是否启用，如果为None则从配置读取
        """
        self.enabled = settings.ENABLE_AI_MOCK if enabled is None else enabled

        if failure_type is None:
            try:
                self.failure_type = MockFailureType(settings.AI_MOCK_FAILURE_TYPE)
            except ValueError:
                logger.warning("无效的Mock失败类型，使用server_error", failure_type=settings.AI_MOCK_FAILURE_TYPE)
                self.failure_type = MockFailureType.SERVER_ERROR
        else:
            self.failure_type = failure_type

        if failure_probability is None:
            self.failure_probability = settings.AI_MOCK_FAILURE_PROBABILITY
        else:
            self.failure_probability = failure_probability

        if self.enabled:
            logger.info("LLM失败模拟已启用",
                        failure_type=self.failure_type.value,
                        failure_probability=self.failure_probability)

    def should_fail(self) -> bool:
        """判断本次调用是否应该模拟失败"""
        if not self.enabled:
            return False
        return random.random() < self.failure_probability

    def maybe_fail(self, api_id: str = "default") -> None:
        """
        根据概率模拟失败

        Raises:
            TransportError: 状态码与失败类型对应
        """
        if not self.should_fail():
            return

        status, status_text = _FAILURE_RESPONSES[self.failure_type]
        logger.info("模拟LLM调用失败", failure_type=self.failure_type.value, api_id=api_id)
        raise TransportError(status, status_text, "simulated failure")

    @staticmethod
    def get_instance() -> Optional["FailureSimulator"]:
        """
        获取失败模拟实例

        Returns:
            启用时返回实例，否则返回None
        """
        if not settings.ENABLE_AI_MOCK:
            return None
        return FailureSimulator()
