"""
推荐结果展示适配
推荐结果可能是完整的finalRecommendation、只有规则评分的ruleMatchingResults或原始recommendations列表，
先识别结构类型，再由对应的适配函数转换为统一的展示行
"""
from typing import Any, Callable, Dict, List, Mapping, Optional, Union
from enum import Enum

import structlog
from pydantic import BaseModel, Field

from weight_advisor.schemas.recommendation import CamelModel, RecommendationBundle
from weight_advisor.schemas.weight_method import WeightMethod
from weight_advisor.services.method_catalog import get_builtin_catalog

logger = structlog.get_logger()


class ResultShape(str, Enum):
    """推荐结果结构类型"""
    FINAL_RECOMMENDATION = "finalRecommendation"
    RULE_MATCHING_RESULTS = "ruleMatchingResults"
    RECOMMENDATIONS = "recommendations"
    DEFAULT = "default"


def _empty_dimensional_scores() -> Dict[str, float]:
    return {
        "taskDimensionMatch": 0,
        "dataDimensionMatch": 0,
        "userDimensionMatch": 0,
        "environmentDimensionMatch": 0,
    }


class DisplayScores(CamelModel):
    rule_score: float = 0.0
    semantic_score: float = 0.0
    hybrid_score: float = 0.0


class DisplayRow(CamelModel):
    """前端展示的推荐行"""
    method: str
    suitability: str = "中"
    reason: str = ""
    advantages: List[str] = []
    considerations: List[str] = []
    implementation_steps: List[str] = []
    implementation: str = ""
    dimensional_scores: Dict[str, float] = Field(default_factory=_empty_dimensional_scores)
    scores: DisplayScores = Field(default_factory=DisplayScores)
    method_source: str = "数据库方法"
    llm_method_details: Optional[Dict[str, Any]] = None
    personalized_implementation: Optional[str] = None


def _non_empty_list(value: Any) -> bool:
    return isinstance(value, list) and len(value) > 0


def classify_result_shape(payload: Any) -> ResultShape:
    """识别推荐结果的结构类型"""
    if not isinstance(payload, Mapping):
        return ResultShape.DEFAULT
    final = payload.get("finalRecommendation")
    if isinstance(final, Mapping) and _non_empty_list(final.get("finalRecommendations")):
        return ResultShape.FINAL_RECOMMENDATION
    rule = payload.get("ruleMatchingResults")
    if isinstance(rule, Mapping) and _non_empty_list(rule.get("ruleScoringResults")):
        return ResultShape.RULE_MATCHING_RESULTS
    if _non_empty_list(payload.get("recommendations")):
        return ResultShape.RECOMMENDATIONS
    return ResultShape.DEFAULT


def _adapt_final_recommendation(payload: Mapping[str, Any], catalog: List[WeightMethod]) -> List[DisplayRow]:
    rows = []
    for rec in payload["finalRecommendation"]["finalRecommendations"]:
        semantic = rec.get("semanticAnalysis") or {}
        rule = rec.get("ruleAnalysis") or {}
        advice = semantic.get("implementationAdvice") or []
        rows.append(DisplayRow(
            method=rec.get("methodName", ""),
            suitability=semantic.get("suitabilityLevel") or "中",
            reason=semantic.get("matchExplanation") or "基于规则和语义分析的推荐",
            advantages=semantic.get("advantages") or [],
            considerations=semantic.get("risks") or [],
            implementation_steps=advice,
            implementation="\n".join(advice),
            dimensional_scores=rule.get("dimensionalScores") or _empty_dimensional_scores(),
            scores=DisplayScores(
                rule_score=rec.get("ruleScore") or 0,
                semantic_score=rec.get("semanticScore") or 0,
                hybrid_score=rec.get("finalScore") or 0,
            ),
            method_source=rec.get("methodSource") or "数据库方法",
            llm_method_details=rec.get("llmMethodDetails"),
            personalized_implementation=rec.get("personalizedImplementation"),
        ))
    return rows


def _adapt_rule_matching_results(payload: Mapping[str, Any], catalog: List[WeightMethod]) -> List[DisplayRow]:
    rows = []
    for rec in payload["ruleMatchingResults"]["ruleScoringResults"]:
        total = rec.get("totalRuleScore") or 0
        row = DisplayRow(
            method=rec.get("methodName", ""),
            reason=rec.get("recommendationReason") or rec.get("matchingExplanation") or "基于规则评分的推荐",
            scores=DisplayScores(rule_score=total, hybrid_score=total),
            method_source="规则推荐",
        )
        if isinstance(rec.get("dimensionalScores"), Mapping):
            row.dimensional_scores = dict(rec["dimensionalScores"])
        rows.append(row)
    return rows


def _adapt_recommendations(payload: Mapping[str, Any], catalog: List[WeightMethod]) -> List[DisplayRow]:
    rows = []
    for rec in payload["recommendations"]:
        if not isinstance(rec, Mapping):
            continue
        scores = rec.get("scores") if isinstance(rec.get("scores"), Mapping) else {}
        implementation = rec.get("implementation")
        row = DisplayRow(
            method=rec.get("method") or rec.get("methodName") or "",
            suitability=rec.get("suitability") or "中",
            reason=rec.get("reason") or "基于分析推荐",
            advantages=rec.get("advantages") or [],
            considerations=rec.get("considerations") or [],
            implementation_steps=implementation.split("\n") if isinstance(implementation, str) else [],
            implementation=implementation if isinstance(implementation, str) else "请咨询专业人员",
            scores=DisplayScores(
                rule_score=scores.get("userNeedsMatch") or 0,
                semantic_score=scores.get("dataFeatureMatch") or 0,
                hybrid_score=scores.get("overallScore") or 0,
            ),
            method_source="AI推荐",
        )
        if scores:
            row.dimensional_scores = {
                "taskDimensionMatch": scores.get("userNeedsMatch") or 0,
                "dataDimensionMatch": scores.get("dataFeatureMatch") or 0,
                "userDimensionMatch": scores.get("overallScore") or 0,
                "environmentDimensionMatch": scores.get("overallScore") or 0,
            }
        rows.append(row)
    return rows


def default_display_rows(catalog: List[WeightMethod]) -> List[DisplayRow]:
    """无法识别结果时，使用方法库前3个方法作为默认推荐"""
    return [
        DisplayRow(
            method=method.name,
            reason=method.detail,
            advantages=method.advantages,
            considerations=method.limitations,
            implementation_steps=method.implementation_steps,
            implementation="\n".join(method.implementation_steps),
        )
        for method in catalog[:3]
    ]


ADAPTERS: Dict[ResultShape, Callable[[Mapping[str, Any], List[WeightMethod]], List[DisplayRow]]] = {
    ResultShape.FINAL_RECOMMENDATION: _adapt_final_recommendation,
    ResultShape.RULE_MATCHING_RESULTS: _adapt_rule_matching_results,
    ResultShape.RECOMMENDATIONS: _adapt_recommendations,
    ResultShape.DEFAULT: lambda payload, catalog: default_display_rows(catalog),
}


def to_display_rows(
    result: Union[RecommendationBundle, Mapping[str, Any], None],
    catalog: Optional[List[WeightMethod]] = None
) -> List[DisplayRow]:
    """
    将推荐结果转换为展示行

    Args:
        result: 推荐结果（RecommendationBundle或其camelCase字典）
        catalog: 默认推荐使用的方法库，为None时使用内置方法库

    Returns:
        展示行列表；适配结果为空时使用默认推荐
    """
    payload = result.model_dump(by_alias=True) if isinstance(result, BaseModel) else result
    catalog = catalog if catalog is not None else get_builtin_catalog()

    shape = classify_result_shape(payload)
    rows = ADAPTERS[shape](payload, catalog)
    if not rows:
        logger.warning("推荐结果为空，使用默认推荐", shape=shape.value)
        rows = default_display_rows(catalog)

    logger.debug("推荐结果适配完成", shape=shape.value, count=len(rows))
    return rows
