"""
语义分析服务
对单个候选方法与问题画像的契合度进行语义层面的评估
"""
from typing import Any, Dict, Optional

import structlog
from pydantic import ValidationError

from weight_advisor.schemas.recommendation import SemanticAnalysisResult
from weight_advisor.services.fallback_results import build_mock_semantic_result
from weight_advisor.services.llm_stage import LLMStage
from weight_advisor.services.llm_transport import EndpointConfig
from weight_advisor.services.prompt_templates import PromptTemplateId

logger = structlog.get_logger()

SEMANTIC_TEMPERATURE = 0.4


class SemanticAnalyzer(LLMStage):
    """语义分析器"""

    async def analyze_method(
        self,
        method_name: str,
        method_detail: Optional[Dict[str, Any]],
        user_needs: Dict[str, Any],
        data_features: Optional[Dict[str, Any]],
        config: Optional[EndpointConfig] = None
    ) -> SemanticAnalysisResult:
        """
        语义分析单个方法

        Args:
            method_name: 方法名称
            method_detail: 方法完整信息（方法库条目或LLM生成的详情）
            user_needs: 用户需求画像
            data_features: 数据特征
            config: API配置

        Returns:
            语义分析结果，失败时返回7分的备用结果
        """
        method_info = {**(method_detail or {}), "name": method_name}
        result = await self._invoke_json(
            PromptTemplateId.SEMANTIC_ANALYSIS,
            {"P": user_needs, "M": method_info, "dataFeatures": data_features or {}},
            SEMANTIC_TEMPERATURE,
            required_keys=("semanticMatchScore",),
            config=config,
            stage="语义分析",
        )
        if result is None:
            return build_mock_semantic_result(method_name, method_info)

        try:
            analysis = SemanticAnalysisResult.model_validate({**result, "methodName": method_name})
        except ValidationError as e:
            logger.warning("语义分析结果格式错误，使用备用结果", method=method_name, error=str(e))
            return build_mock_semantic_result(method_name, method_info)

        logger.info("语义分析完成", method=method_name, score=analysis.semantic_match_score,
                    api_id=config.id if config else None)
        return analysis
