"""
规则匹配服务
- 方法库四维度规则评分
- 平均分不高于9.0时请求LLM补充推荐方法，并对补充方法评分
"""
from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog
from pydantic import ValidationError

from weight_advisor.schemas.recommendation import (
    AVERAGE_SCORE_THRESHOLD,
    BatchProcessingDetails,
    LLMSupplementResult,
    RuleMatchingOutcome,
    RuleScoringResult,
)
from weight_advisor.schemas.weight_method import WeightMethod
from weight_advisor.services.fallback_results import build_mock_rule_scoring
from weight_advisor.services.llm_stage import LLMStage
from weight_advisor.services.llm_transport import EndpointConfig
from weight_advisor.services.method_catalog import filter_methods_for_prompt
from weight_advisor.services.prompt_templates import PromptTemplateId
from weight_advisor.utils.pipeline_exception import ShapeValidationError

logger = structlog.get_logger()

SCORING_TEMPERATURE = 0.3
SUGGESTION_TEMPERATURE = 0.7
SHORTLIST_SIZE = 3
MAX_SUPPLEMENT_METHODS = 2


def suggestion_name(suggestion: Dict[str, Any]) -> str:
    """补充推荐中的方法名称（兼容method/methodName/name）"""
    name = suggestion.get("method") or suggestion.get("methodName") or suggestion.get("name") or ""
    return str(name).strip()


def parse_scoring_results(raw_results: Any, allowed_names: Iterable[str]) -> List[RuleScoringResult]:
    """
    将LLM返回的评分列表转换为RuleScoringResult

    名称不在allowed_names中、格式错误或重复的条目会被丢弃
    """
    allowed = set(allowed_names)
    results: Dict[str, RuleScoringResult] = {}
    for item in raw_results if isinstance(raw_results, list) else []:
        if not isinstance(item, dict):
            continue
        try:
            result = RuleScoringResult.model_validate(item)
        except ValidationError as e:
            logger.debug("评分条目格式错误，已丢弃", error=str(e))
            continue
        if result.method_name not in allowed:
            logger.warning("评分结果中的方法不在候选列表中，已丢弃", method=result.method_name)
            continue
        results.setdefault(result.method_name, result)
    return list(results.values())


def rank_results(results: Sequence[RuleScoringResult]) -> List[RuleScoringResult]:
    """按totalRuleScore降序排列（同分保持原顺序）"""
    return sorted(results, key=lambda r: -(r.total_rule_score or 0.0))


def summarize_rule_scores(
    results: Sequence[RuleScoringResult],
    used_fallback: bool = False,
    details: Optional[BatchProcessingDetails] = None
) -> RuleMatchingOutcome:
    """
    汇总规则评分：取前3名，计算平均分并判断是否需要LLM补充

    平均分 <= 9.0 时需要补充
    """
    ranked = rank_results(results)
    top = ranked[:SHORTLIST_SIZE]
    average = sum(r.total_rule_score for r in top) / len(top) if top else 0.0

    return RuleMatchingOutcome(
        rule_scoring_results=top,
        all_scoring_results=ranked,
        top_candidates=[r.method_name for r in top],
        average_score=average,
        needs_llm_supplement=average <= AVERAGE_SCORE_THRESHOLD,
        used_fallback=used_fallback,
        batch_processing_details=details,
    )


def merge_supplement(
    outcome: RuleMatchingOutcome,
    supplement_results: Sequence[RuleScoringResult]
) -> List[RuleScoringResult]:
    """合并方法库前3名与补充方法的评分，重新排序后保留前3名"""
    return rank_results(list(outcome.rule_scoring_results) + list(supplement_results))[:SHORTLIST_SIZE]


class RuleMatcher(LLMStage):
    """规则匹配器"""

    async def score_methods(
        self,
        user_needs: Dict[str, Any],
        data_features: Optional[Dict[str, Any]],
        methods: List[WeightMethod],
        config: Optional[EndpointConfig] = None,
        use_fallback: bool = True
    ) -> List[RuleScoringResult]:
        """
        对一组方法进行规则评分

        Args:
            user_needs: 用户需求画像
            data_features: 数据特征
            methods: 待评分方法（完整方法库或其中一批）
            config: API配置
            use_fallback: 失败时是否返回备用评分；为False时抛出异常，供批处理统计失败批次

        Returns:
            评分结果（只包含methods中的方法）

        Raises:
            ShapeValidationError: use_fallback为False且没有得到有效评分
        """
        result = await self._invoke_json(
            PromptTemplateId.RULE_MATCHING,
            {
                "userNeeds": user_needs,
                "dataFeatures": data_features or {},
                "weightMethods": filter_methods_for_prompt(methods),
            },
            SCORING_TEMPERATURE,
            required_keys=("ruleScoringResults",),
            config=config,
            stage="规则匹配",
        )

        results = parse_scoring_results(
            result["ruleScoringResults"] if result else None,
            [method.name for method in methods],
        )
        if results:
            logger.info("规则匹配完成", method_count=len(methods), scored_count=len(results),
                        api_id=config.id if config else None)
            return results

        if not use_fallback:
            raise ShapeValidationError("规则匹配未返回有效评分", {"method_count": len(methods)})

        logger.warning("规则匹配失败，使用备用评分", method_count=len(methods))
        return build_mock_rule_scoring(methods)

    async def suggest_methods(
        self,
        user_needs: Dict[str, Any],
        data_features: Optional[Dict[str, Any]],
        catalog_names: List[str],
        config: Optional[EndpointConfig] = None
    ) -> Optional[LLMSupplementResult]:
        """
        请求LLM推荐方法库之外的方法

        Returns:
            最多2个补充方法；失败或没有有效推荐时返回None
        """
        result = await self._invoke_json(
            PromptTemplateId.METHOD_RECOMMENDATION,
            {
                "weightMethodNames": catalog_names,
                "userNeeds": user_needs,
                "dataFeatures": data_features or {},
            },
            SUGGESTION_TEMPERATURE,
            required_keys=("recommendations",),
            config=config,
            stage="LLM补充推荐",
        )
        if result is None or not isinstance(result["recommendations"], list):
            return None

        existing = set(catalog_names)
        suggestions: List[Dict[str, Any]] = []
        for item in result["recommendations"]:
            if not isinstance(item, dict):
                continue
            name = suggestion_name(item)
            if not name or name in existing:
                if name:
                    logger.info("补充推荐与方法库重复，已跳过", method=name)
                continue
            existing.add(name)
            suggestions.append({**item, "method": name})
            if len(suggestions) == MAX_SUPPLEMENT_METHODS:
                break

        if not suggestions:
            logger.warning("LLM补充推荐没有有效方法")
            return None

        logger.info("LLM补充推荐完成", methods=[suggestion_name(s) for s in suggestions])
        return LLMSupplementResult(
            recommendations=suggestions,
            rationale=str(result.get("rationale") or ""),
        )

    async def score_suggested_methods(
        self,
        user_needs: Dict[str, Any],
        data_features: Optional[Dict[str, Any]],
        suggestions: List[Dict[str, Any]],
        config: Optional[EndpointConfig] = None
    ) -> Optional[List[RuleScoringResult]]:
        """对补充推荐的方法进行规则评分，失败时返回None"""
        names = [suggestion_name(s) for s in suggestions]
        result = await self._invoke_json(
            PromptTemplateId.LLM_METHOD_RULE_SCORING,
            {
                "llmMethods": suggestions,
                "userNeeds": user_needs,
                "dataFeatures": data_features or {},
            },
            SCORING_TEMPERATURE,
            required_keys=("ruleScoringResults",),
            config=config,
            stage="补充方法评分",
        )
        if result is None:
            return None

        results = parse_scoring_results(result["ruleScoringResults"], names)
        if not results:
            logger.warning("补充方法评分结果为空", methods=names)
            return None
        return results
