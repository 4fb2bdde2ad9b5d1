"""
推荐流程异常类
定义明确的错误类型和错误信息结构
"""
from typing import Dict, Optional
from enum import Enum


class PipelineErrorType(str, Enum):
    """错误类型枚举"""
    TRANSPORT_ERROR = "transport_error"
    RESPONSE_SHAPE_ERROR = "response_shape_error"
    NORMALIZATION_FAILURE = "normalization_failure"
    SHAPE_VALIDATION_ERROR = "shape_validation_error"
    CONFIGURATION_ERROR = "configuration_error"


class PipelineException(Exception):
    """推荐流程异常基类"""

    error_type: PipelineErrorType = PipelineErrorType.TRANSPORT_ERROR

    def __init__(self, error_message: str, error_details: Optional[Dict] = None):
        """
        初始化流程异常

        Args:
            error_message: 错误消息
            error_details: 错误详情
        """
        super().__init__(error_message)
        self.error_message = error_message
        self.error_details = error_details or {}

    def to_dict(self) -> Dict:
        """转换为字典格式"""
        return {
            "error_type": self.error_type.value,
            "error_message": self.error_message,
            "error_details": self.error_details
        }


class TransportError(PipelineException):
    """LLM接口返回非2xx，或调用超时/网络失败（status为0）"""

    error_type = PipelineErrorType.TRANSPORT_ERROR

    def __init__(self, status: int, status_text: str, body: str = ""):
        super().__init__(
            f"LLM接口调用失败: {status} {status_text}",
            {"status": status, "status_text": status_text, "body": body[:500]}
        )
        self.status = status
        self.status_text = status_text
        self.body = body

    @property
    def retryable(self) -> bool:
        """429限流、5xx服务器错误和超时/网络错误可重试"""
        return self.status in (0, 429) or 500 <= self.status < 600


class ResponseShapeError(TransportError):
    """响应既没有choices[0].message.content也没有text字段"""

    error_type = PipelineErrorType.RESPONSE_SHAPE_ERROR

    def __init__(self, body: str = ""):
        super().__init__(200, "无法识别的响应结构", body)

    @property
    def retryable(self) -> bool:
        return False


class ShapeValidationError(PipelineException):
    """JSON解析成功但缺少阶段要求的字段"""

    error_type = PipelineErrorType.SHAPE_VALIDATION_ERROR


class ConfigurationError(PipelineException):
    """权重方法库为空，或没有可用的API密钥"""

    error_type = PipelineErrorType.CONFIGURATION_ERROR
