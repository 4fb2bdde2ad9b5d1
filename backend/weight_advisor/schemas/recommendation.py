"""
推荐流程相关的Pydantic Schema
字段使用snake_case，序列化时输出与LLM/前端约定一致的camelCase
"""
import math
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from typing import Any, Dict, List, Optional

from weight_advisor.schemas.weight_method import WeightMethod


RULE_WEIGHT = 0.6
SEMANTIC_WEIGHT = 0.4
AVERAGE_SCORE_THRESHOLD = 9.0


def clamp_score(value: Any) -> float:
    """将LLM返回的分数转换为0-10之间的浮点数，无法解析时返回0"""
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(score):
        return 0.0
    return max(0.0, min(10.0, score))


def compute_final_score(rule_score: float, semantic_score: float) -> float:
    """最终评分 = 0.6 × 规则分 + 0.4 × 语义分"""
    return RULE_WEIGHT * rule_score + SEMANTIC_WEIGHT * semantic_score


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _as_text_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value else []
    if isinstance(value, (list, tuple)):
        return [_as_text(item) for item in value if item is not None]
    return [_as_text(value)]


class CamelModel(BaseModel):
    """camelCase别名基类"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DimensionalScores(CamelModel):
    """四维度匹配分（0-10）"""
    task_dimension_match: float = 0.0
    data_dimension_match: float = 0.0
    user_dimension_match: float = 0.0
    environment_dimension_match: float = 0.0

    @field_validator("*", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return clamp_score(value)

    def average(self) -> float:
        return (
            self.task_dimension_match
            + self.data_dimension_match
            + self.user_dimension_match
            + self.environment_dimension_match
        ) / 4


class RuleScoringResult(CamelModel):
    """单个方法的规则匹配评分"""
    method_name: str = Field(min_length=1)
    dimensional_scores: DimensionalScores = Field(default_factory=DimensionalScores)
    total_rule_score: Optional[float] = None
    matching_explanation: str = ""
    recommendation_reason: str = ""

    @field_validator("method_name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> str:
        return _as_text(value).strip()

    @field_validator("dimensional_scores", mode="before")
    @classmethod
    def _default_scores(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}

    @field_validator("total_rule_score", mode="before")
    @classmethod
    def _clamp_total(cls, value: Any) -> Optional[float]:
        return None if value is None else clamp_score(value)

    @field_validator("matching_explanation", "recommendation_reason", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return _as_text(value)

    @model_validator(mode="after")
    def _fill_total(self) -> "RuleScoringResult":
        # 缺少总分时取四个维度的平均分
        if self.total_rule_score is None:
            self.total_rule_score = round(self.dimensional_scores.average(), 2)
        return self


class BatchProcessingDetails(CamelModel):
    """批处理元数据"""
    batch_count: int = 0
    total_items: int = 0
    processing_time: float = 0.0
    failed_batches: int = 0
    has_errors: bool = False
    fallback_used: bool = False
    error: Optional[str] = None
    batches: List[Dict[str, Any]] = []


class RuleMatchingOutcome(CamelModel):
    """规则匹配阶段输出"""
    rule_scoring_results: List[RuleScoringResult] = Field(description="规则得分最高的前3个方法")
    all_scoring_results: List[RuleScoringResult] = Field(default_factory=list, description="全部方法评分")
    top_candidates: List[str] = []
    average_score: float = 0.0
    needs_llm_supplement: bool = Field(False, alias="needsLLMSupplement")
    used_fallback: bool = False
    batch_processing_details: Optional[BatchProcessingDetails] = None


class LLMSupplementResult(CamelModel):
    """LLM补充推荐结果"""
    recommendations: List[Dict[str, Any]] = []
    rule_scoring_results: List[RuleScoringResult] = []
    rationale: str = ""

    def method_names(self) -> List[str]:
        return [r.get("method") or r.get("methodName") or r.get("name") for r in self.recommendations]

    def find(self, method_name: str) -> Optional[Dict[str, Any]]:
        for recommendation in self.recommendations:
            name = recommendation.get("method") or recommendation.get("methodName") or recommendation.get("name")
            if name == method_name:
                return recommendation
        return None


class SemanticAnalysisResult(CamelModel):
    """单个候选方法的语义分析结果"""
    method_name: str
    semantic_match_score: float
    match_explanation: str = ""
    advantages: List[str] = []
    risks: List[str] = []
    implementation_advice: List[str] = []
    suitability_level: str = "中"
    supplementary_impact: List[str] = []
    is_fallback: bool = False

    @field_validator("semantic_match_score", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return clamp_score(value)

    @field_validator("match_explanation", "suitability_level", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("advantages", "risks", "implementation_advice", "supplementary_impact", mode="before")
    @classmethod
    def _text_list(cls, value: Any) -> List[str]:
        return _as_text_list(value)


class PersonalizedImplementation(CamelModel):
    """个性化实施建议"""
    method_name: str
    personalized_implementation: str
    raw_result: Optional[Dict[str, Any]] = None
    api_id: Optional[str] = None
    is_fallback: bool = False


class MethodDetailResult(CamelModel):
    """LLM推荐方法的扩展详情"""
    method_name: str
    detail: Dict[str, Any]
    is_fallback: bool = False


class FinalRecommendation(CamelModel):
    """最终推荐条目"""
    method_name: str
    rule_score: float
    semantic_score: float
    final_score: float
    method_source: str = Field(description="数据库方法 / LLM推荐")
    rule_analysis: RuleScoringResult
    semantic_analysis: SemanticAnalysisResult
    personalized_implementation: Optional[str] = None
    llm_method_details: Optional[Dict[str, Any]] = None


class FinalRecommendationSet(CamelModel):
    """最终推荐列表（按finalScore降序）"""
    final_recommendations: List[FinalRecommendation]
    top_recommendation: Optional[FinalRecommendation] = None
    scoring_weights: Dict[str, float] = Field(
        default_factory=lambda: {"RULE_WEIGHT": RULE_WEIGHT, "SEMANTIC_WEIGHT": SEMANTIC_WEIGHT}
    )


class ProcessingSummary(CamelModel):
    """处理摘要"""
    used_llm_supplement: bool = Field(False, alias="usedLLMSupplement")
    average_rule_score: float = 0.0
    total_candidates: int = 0
    final_methods_count: int = 0
    has_personalized_implementations: bool = False
    completion_status: str = "success"
    batch_processing_details: Optional[BatchProcessingDetails] = None
    error: Optional[str] = None


class RecommendationBundle(CamelModel):
    """推荐流程完整结果"""
    user_needs: Dict[str, Any]
    data_analysis: Optional[Dict[str, Any]] = None
    rule_matching_results: RuleMatchingOutcome
    llm_supplement_results: Optional[LLMSupplementResult] = None
    semantic_analysis_results: List[SemanticAnalysisResult] = []
    personalized_implementations: List[PersonalizedImplementation] = []
    llm_method_details: List[MethodDetailResult] = []
    final_recommendation: FinalRecommendationSet
    processing_summary: ProcessingSummary


class RecommendationRequest(CamelModel):
    """推荐请求"""
    questionnaire_data: Dict[str, Any] = {}
    user_needs: Optional[Dict[str, Any]] = None
    data_features: Optional[Dict[str, Any]] = None
    weight_methods: Optional[List[WeightMethod]] = Field(None, description="为空时使用内置方法库")
    user_api_keys: Dict[str, str] = Field(default_factory=dict, description="用户自定义API密钥")
