"""
用户需求与数据特征分析
"""
from typing import Any, Dict, Mapping, Optional

import structlog

from weight_advisor.services.fallback_results import (
    DEFAULT_QUESTIONNAIRE,
    build_mock_data_features,
    build_mock_user_needs,
)
from weight_advisor.services.llm_stage import LLMStage
from weight_advisor.services.prompt_templates import PromptTemplateId

logger = structlog.get_logger()

ANALYSIS_TEMPERATURE = 0.2


class NeedsAnalyzer(LLMStage):
    """用户需求分析器"""

    async def analyze_user_needs(self, questionnaire: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """
        分析问卷，得到四维度用户需求画像

        Args:
            questionnaire: 问卷原始数据，为空时使用默认问卷

        Returns:
            用户需求画像（LLM结果或备用结果）
        """
        if not questionnaire:
            logger.info("问卷数据为空，使用默认问卷")
            questionnaire = DEFAULT_QUESTIONNAIRE

        result = await self._invoke_json(
            PromptTemplateId.USER_NEEDS_ANALYSIS,
            {"questionnaireData": questionnaire},
            ANALYSIS_TEMPERATURE,
            required_keys=("taskDimension", "userDimension"),
            stage="用户需求分析",
        )
        if result is None:
            return build_mock_user_needs(questionnaire)

        logger.info("用户需求分析完成", dimensions=[key for key in result if key.endswith("Dimension")])
        return result

    async def analyze_data_features(self, features: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """分析数据特征（上传数据提取的特征或问卷中的预期特征）"""
        result = await self._invoke_json(
            PromptTemplateId.DATA_ANALYSIS,
            {"dataFeatures": features or {}},
            ANALYSIS_TEMPERATURE,
            stage="数据特征分析",
        )
        if result is None:
            return build_mock_data_features(features)

        # 保留数据来源标记
        if features and "source" in features and "source" not in result:
            result["source"] = features["source"]
        logger.info("数据特征分析完成", keys=list(result.keys()))
        return result
