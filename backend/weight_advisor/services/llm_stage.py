"""
LLM阶段基类
渲染提示词 -> 调用LLM -> 解析JSON -> 校验必需字段，任一环节失败时返回None由子类使用备用结果
"""
from typing import Any, Dict, Iterable, Mapping, Optional

import structlog

from weight_advisor.services.llm_transport import EndpointConfig, LLMTransport, get_llm_transport
from weight_advisor.services.prompt_templates import PromptTemplateId, render_prompt
from weight_advisor.services.response_normalizer import parse_json_from_text
from weight_advisor.utils.pipeline_exception import ShapeValidationError, TransportError

logger = structlog.get_logger()


def require_keys(parsed: Any, required_keys: Iterable[str], stage: str) -> Dict[str, Any]:
    """
    校验解析结果为对象且包含全部必需字段

    Raises:
        ShapeValidationError: 不是对象或缺少字段
    """
    if not isinstance(parsed, dict):
        raise ShapeValidationError(f"{stage}返回的不是JSON对象", {"type": type(parsed).__name__})
    missing = [key for key in required_keys if key not in parsed]
    if missing:
        raise ShapeValidationError(f"{stage}返回结果缺少必需字段", {"missing": missing})
    return parsed


class LLMStage:
    """各LLM阶段的公共调用流程"""

    def __init__(self, transport: Optional[LLMTransport] = None):
        self.transport = transport or get_llm_transport()

    async def _invoke_json(
        self,
        template_id: PromptTemplateId,
        variables: Mapping[str, Any],
        temperature: float,
        required_keys: Iterable[str] = (),
        config: Optional[EndpointConfig] = None,
        stage: str = ""
    ) -> Optional[Dict[str, Any]]:
        """
        执行一次LLM调用并返回校验后的JSON对象

        Args:
            template_id: 提示词模板ID
            variables: 模板变量
            temperature: 本阶段温度
            required_keys: 必需的顶层字段
            config: API配置，为None时使用默认配置
            stage: 阶段名称（用于日志）

        Returns:
            JSON对象；调用失败、无法解析或缺少字段时返回None

        Raises:
            ConfigurationError: 没有可用的API密钥
        """
        prompt = render_prompt(template_id, variables)

        try:
            raw = await self.transport.call_model(prompt, temperature=temperature, config=config)
        except TransportError as e:
            logger.warning("LLM调用失败，使用备用结果", stage=stage, status=e.status, error=e.error_message)
            return None

        parsed = parse_json_from_text(raw)
        if parsed is None:
            logger.warning("LLM响应无法解析为JSON，使用备用结果", stage=stage, response_length=len(raw))
            return None

        try:
            return require_keys(parsed, required_keys, stage)
        except ShapeValidationError as e:
            logger.warning("LLM响应结构不完整，使用备用结果", stage=stage, error=e.error_message, **e.error_details)
            return None
