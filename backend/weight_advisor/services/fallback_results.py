"""
备用结果生成
LLM调用失败或返回结构不完整时，根据原始输入生成确定性的默认结果，保证调用方总能拿到结构正确的数据
"""
from typing import Any, Dict, List, Mapping, Optional

from weight_advisor.schemas.recommendation import (
    DimensionalScores,
    FinalRecommendation,
    FinalRecommendationSet,
    PersonalizedImplementation,
    ProcessingSummary,
    RecommendationBundle,
    RuleMatchingOutcome,
    RuleScoringResult,
    SemanticAnalysisResult,
    compute_final_score,
)
from weight_advisor.schemas.weight_method import WeightMethod

DEFAULT_QUESTIONNAIRE: Dict[str, Any] = {
    "taskDimension": {
        "domain": "综合评价",
        "purpose": "对多个选项进行排序/筛选",
        "evaluationNature": "描述性",
        "complexity": "中",
    },
    "userDimension": {
        "precision": "中",
        "riskTolerance": "中",
        "methodPreference": "无偏好",
        "knowledgeLevel": "中级",
    },
    "environmentDimension": {
        "timeConstraint": "适中",
        "computingResource": "基础",
        "experts": "有限",
    },
}

FALLBACK_IMPLEMENTATION_TEXT = "无法生成个性化实施建议，请咨询专业人士获取实施指导。"
FALLBACK_BUNDLE_IMPLEMENTATION_TEXT = "系统自动生成的备用实施建议，建议咨询专业人士获取更详细的实施指导。"

FALLBACK_BUNDLE_SIZE = 3


def _pick(questionnaire: Mapping[str, Any], dimension: str, key: str, default: Any) -> Any:
    """先从维度分组中取值，再取扁平字段"""
    group = questionnaire.get(dimension)
    if isinstance(group, Mapping) and group.get(key) not in (None, "", []):
        return group[key]
    value = questionnaire.get(key)
    return default if value in (None, "", []) else value


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    return list(value) if isinstance(value, (list, tuple)) else [value]


def build_mock_user_needs(questionnaire: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """根据问卷原始字段生成四维度用户需求画像"""
    q = questionnaire or DEFAULT_QUESTIONNAIRE
    domain = _pick(q, "taskDimension", "domain", "综合评价")

    return {
        "taskDimension": {
            "domain": domain,
            "purpose": _pick(q, "taskDimension", "purpose", "对多个选项进行排序/筛选"),
            "evaluationNature": _pick(q, "taskDimension", "evaluationNature", "描述性"),
            "complexity": _pick(q, "taskDimension", "complexity", "中"),
            "applicationScope": _pick(q, "taskDimension", "applicationScope",
                                      _pick(q, "environmentDimension", "application", "内部管理")),
        },
        "dataDimension": {
            "indicatorCount": _pick(q, "dataDimension", "indicatorCount", "中等"),
            "variableType": _pick(q, "dataDimension", "variableType", "混合"),
            "dataQualityIssues": _as_list(_pick(q, "dataDimension", "dataQualityIssues", [])),
        },
        "userDimension": {
            "precision": _pick(q, "userDimension", "precision", "中"),
            "structure": _pick(q, "userDimension", "structure", "单层"),
            "relation": _pick(q, "userDimension", "relation", "独立"),
            "methodPreference": _pick(q, "userDimension", "methodPreference", "无偏好"),
            "knowledgeLevel": _pick(q, "userDimension", "knowledgeLevel", "中级"),
            "riskTolerance": _pick(q, "userDimension", "riskTolerance", "中"),
            "specialRequirements": _as_list(_pick(q, "userDimension", "specialRequirements", [])),
            "supplementaryInsights": [],
        },
        "environmentDimension": {
            "expertiseLevel": _pick(q, "environmentDimension", "expertiseLevel",
                                    _pick(q, "environmentDimension", "experts", "有限")),
            "timeConstraint": _pick(q, "environmentDimension", "timeConstraint", "适中"),
            "computingResource": _pick(q, "environmentDimension", "computingResource", "基础"),
            "environmentConstraints": _as_list(_pick(q, "environmentDimension", "environmentConstraints", [])),
        },
        "analysisConfidence": 0.8,
        "recommendationContext": f"基于用户的{domain}领域需求，推荐适合的权重确定方法",
        "_isFallbackResponse": True,
    }


def build_expected_data_features(questionnaire: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    用户没有上传数据时，根据问卷中声明的预期数据情况构建数据特征

    Args:
        questionnaire: 问卷原始数据

    Returns:
        预期数据特征（source=questionnaire）
    """
    q = questionnaire or {}
    indicator_count = _pick(q, "dataDimension", "indicatorCount", None)
    variable_type = _pick(q, "dataDimension", "variableType", None)
    issues = _as_list(_pick(q, "dataDimension", "dataQualityIssues", []))
    structure = _pick(q, "userDimension", "structure", None)
    levels = _pick(q, "userDimension", "levels", "多")
    relation = _pick(q, "userDimension", "relation", None)

    count_ranges = {"少": "预计少量(10个以下)", "中": "预计中等(10-30个)", "多": "预计大量(30个以上)"}
    dependent = relation == "依赖"

    return {
        "source": "questionnaire",
        "dataStructure": {
            "indicatorCount": indicator_count or "未知",
            "indicatorTypes": ["预期指标"],
            "variableTypes": variable_type or "未知",
            "indicatorCountRange": count_ranges.get(indicator_count, "未知"),
            "hierarchyLevels": f"预计{levels}层" if structure == "多层次" else "预计单层",
        },
        "dataQuality": {
            "completeness": 5,
            "reliability": 5,
            "consistency": 5,
            "missingValuePattern": "预计存在" if "缺失值" in issues else "预计无",
            "outlierSituation": "预计存在" if "异常值" in issues else "预计无",
            "dataQualityRequirement": "预计高" if "无问题" in issues else "预计中",
        },
        "distributionFeatures": {
            "distribution": "预计非正态/偏态" if "分布不均" in issues else "预计正态",
            "sampleSize": "预计小" if "样本量小" in issues else ("预计大" if indicator_count == "多" else "预计中"),
            "variability": "预计中等",
        },
        "correlationFeatures": {
            "overallCorrelation": "预计高" if dependent else "预计中低",
            "multicollinearityIssues": "预计可能存在" if dependent else "预计可能性低",
        },
        "limitations": ["数据特征基于用户问卷预期"] + [f"预计数据问题: {issue}" for issue in issues],
        "methodSuitability": {
            "objectiveMethodSuitability": {"定量": 8, "混合": 6}.get(variable_type, 4),
            "subjectiveMethodSuitability": {"定性": 8, "混合": 7}.get(variable_type, 5),
            "hybridMethodSuitability": 9 if variable_type == "混合" else 7,
        },
    }


def build_mock_data_features(features: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """数据特征分析失败时，保留输入中已有的结构，补齐缺省字段"""
    features = dict(features or {})
    structure = features.get("dataStructure") if isinstance(features.get("dataStructure"), Mapping) else {}

    result = {
        "dataStructure": {
            "indicatorCount": structure.get("indicatorCount", features.get("indicatorCount", "未知")),
            "variableTypes": structure.get("variableTypes", features.get("variableType", "未知")),
            "hierarchyLevels": structure.get("hierarchyLevels", features.get("hierarchyLevels", "预计单层")),
        },
        "dataQuality": {"completeness": 5, "consistency": 5, "reliability": 5},
        "distributionFeatures": {"distribution": "未知", "sampleSize": features.get("sampleSize", "未知")},
        "correlationFeatures": {"overallCorrelation": "未知"},
        "limitations": ["数据特征分析未完成，使用默认特征"],
        "methodSuitability": {
            "objectiveMethodSuitability": 6,
            "subjectiveMethodSuitability": 6,
            "hybridMethodSuitability": 7,
        },
        "_isFallbackResponse": True,
    }
    # 输入本身已是完整画像时以输入为准
    for key, value in features.items():
        if key in result and isinstance(value, Mapping) and isinstance(result[key], dict):
            result[key] = {**result[key], **value}
        elif key not in result:
            result[key] = value
    return result


def build_mock_rule_scoring(methods: List[WeightMethod]) -> List[RuleScoringResult]:
    """按方法库顺序给出递减的占位评分（7.0起，每个降0.5，最低5.0）"""
    results = []
    for index, method in enumerate(methods):
        score = max(5.0, 7.0 - index * 0.5)
        results.append(RuleScoringResult(
            method_name=method.name,
            dimensional_scores=DimensionalScores(
                task_dimension_match=score,
                data_dimension_match=score,
                user_dimension_match=score,
                environment_dimension_match=score,
            ),
            total_rule_score=score,
            matching_explanation="备用规则匹配结果",
            recommendation_reason=method.detail[:60],
        ))
    return results


def build_mock_semantic_result(method_name: str, method_info: Optional[Mapping[str, Any]] = None) -> SemanticAnalysisResult:
    """语义分析失败时的中等分数结果"""
    info = method_info or {}
    return SemanticAnalysisResult(
        method_name=method_name,
        semantic_match_score=7.0,
        match_explanation="备用语义分析结果",
        advantages=_as_list(info.get("advantages"))[:3] or ["方法适用性良好", "实施难度适中"],
        risks=_as_list(info.get("limitations"))[:3] or ["可能需要专业知识支持"],
        implementation_advice=["参考相关文献", "咨询领域专家"],
        suitability_level="中",
        is_fallback=True,
    )


def build_fallback_method_detail(method_name: str, suggestion: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """方法详情生成失败时，使用补充推荐中已有的基本信息"""
    info = suggestion or {}
    conditions = _as_list(info.get("suitConditions"))
    return {
        "name": method_name,
        "detail": info.get("detail") or f"{method_name}的详细说明暂不可用",
        "type": info.get("type") or "",
        "suitConditions": conditions,
        "advantages": _as_list(info.get("advantages")),
        "limitations": _as_list(info.get("limitations")),
        "implementationSteps": _as_list(info.get("implementationSteps")),
        "suitableScenarios": conditions,
        "mathematicalModel": "",
        "calculationExample": "",
    }


def build_fallback_bundle(
    methods: List[WeightMethod],
    error: str,
    user_needs: Optional[Dict[str, Any]] = None
) -> RecommendationBundle:
    """
    推荐流程整体失败时的最小推荐结果

    取方法库前3个方法，使用占位分数（7.0起每个降0.5）和通用文本

    Args:
        methods: 方法库（非空）
        error: 失败原因
        user_needs: 已得到的用户需求画像（可选）
    """
    rule_results: List[RuleScoringResult] = []
    finals: List[FinalRecommendation] = []
    personalized: List[PersonalizedImplementation] = []

    for index, method in enumerate(methods[:FALLBACK_BUNDLE_SIZE]):
        score = 7.0 - 0.5 * index
        rule = RuleScoringResult(
            method_name=method.name,
            dimensional_scores=DimensionalScores(
                task_dimension_match=7,
                data_dimension_match=7,
                user_dimension_match=7,
                environment_dimension_match=7,
            ),
            total_rule_score=score,
            matching_explanation="系统自动生成的备用推荐",
            recommendation_reason=method.detail,
        )
        semantic = SemanticAnalysisResult(
            method_name=method.name,
            semantic_match_score=score,
            match_explanation="系统自动生成的备用推荐",
            advantages=method.advantages,
            risks=method.limitations,
            implementation_advice=method.implementation_steps,
            suitability_level="中",
            is_fallback=True,
        )
        rule_results.append(rule)
        personalized.append(PersonalizedImplementation(
            method_name=method.name,
            personalized_implementation=FALLBACK_BUNDLE_IMPLEMENTATION_TEXT,
            is_fallback=True,
        ))
        finals.append(FinalRecommendation(
            method_name=method.name,
            rule_score=score,
            semantic_score=score,
            final_score=compute_final_score(score, score),
            method_source="数据库方法",
            rule_analysis=rule,
            semantic_analysis=semantic,
            personalized_implementation=FALLBACK_BUNDLE_IMPLEMENTATION_TEXT,
        ))

    average = sum(r.total_rule_score for r in rule_results) / len(rule_results) if rule_results else 0.0
    return RecommendationBundle(
        user_needs=user_needs or {
            "taskDimension": {"domain": "未知领域"},
            "userDimension": {"methodPreference": "无偏好"},
            "environmentDimension": {"expertiseLevel": "有限"},
        },
        rule_matching_results=RuleMatchingOutcome(
            rule_scoring_results=rule_results,
            all_scoring_results=rule_results,
            top_candidates=[r.method_name for r in rule_results],
            average_score=average,
            needs_llm_supplement=False,
            used_fallback=True,
        ),
        semantic_analysis_results=[f.semantic_analysis for f in finals],
        personalized_implementations=personalized,
        final_recommendation=FinalRecommendationSet(
            final_recommendations=finals,
            top_recommendation=finals[0] if finals else None,
        ),
        processing_summary=ProcessingSummary(
            used_llm_supplement=False,
            average_rule_score=average,
            total_candidates=len(finals),
            final_methods_count=len(finals),
            has_personalized_implementations=False,
            completion_status="fallback",
            error=error,
        ),
    )
