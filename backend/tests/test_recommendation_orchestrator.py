"""
RecommendationOrchestrator测试
"""
import pytest

from utils.fake_llm import FakeTransport, SAMPLE_DATA_FEATURES, SAMPLE_METHOD_NAMES
from weight_advisor.services.recommendation_orchestrator import (
    METHOD_SOURCE_CATALOG,
    METHOD_SOURCE_LLM,
    RecommendationOrchestrator,
)
from weight_advisor.services.run_manager import CancellationToken, PipelineRunState, PipelineStatus
from weight_advisor.utils.pipeline_exception import ConfigurationError

HIGH_SCORES = {
    "层次分析法(AHP)": 9.5,
    "熵权法": 9.2,
    "CRITIC法": 9.0,
    "德尔菲法": 6.0,
    "主成分分析法": 5.0,
}

LOW_SCORES = {
    "层次分析法(AHP)": 7.0,
    "熵权法": 6.5,
    "CRITIC法": 6.0,
    "德尔菲法": 5.0,
    "主成分分析法": 4.0,
}

SUGGESTIONS = [
    {"method": "模糊综合评价法", "type": "组合赋权法", "detail": "基于模糊数学的综合评价方法"},
    {"method": "熵权法", "type": "客观赋权法", "detail": "与方法库重复"},
    {"method": "TOPSIS组合赋权法", "type": "组合赋权法", "detail": "结合理想解排序"},
]


def _final_names(bundle):
    return [r.method_name for r in bundle.final_recommendation.final_recommendations]


@pytest.mark.asyncio
async def test_high_rule_scores_skip_supplement(questionnaire, methods, single_config):
    """测试规则平均分高于9.0时不请求LLM补充"""
    fake = FakeTransport(rule_scores=HIGH_SCORES)
    orchestrator = RecommendationOrchestrator(fake, configs=single_config)
    stages = []

    bundle = await orchestrator.run_recommendation(
        questionnaire, methods, on_stage_change=lambda stage, message: stages.append(stage)
    )

    assert bundle is not None
    assert fake.stage_calls("suggestion") == []
    assert fake.stage_calls("method_detail") == []
    assert bundle.rule_matching_results.needs_llm_supplement is False
    assert bundle.llm_supplement_results is None
    assert bundle.processing_summary.used_llm_supplement is False
    assert set(_final_names(bundle)) == {"层次分析法(AHP)", "熵权法", "CRITIC法"}
    assert all(r.method_source == METHOD_SOURCE_CATALOG for r in bundle.final_recommendation.final_recommendations)
    assert stages == [
        "userNeeds", "dataFeatures", "ruleMatching", "llmDetails",
        "semanticAnalysis", "personalization", "finalResult",
    ]


@pytest.mark.asyncio
async def test_final_score_formula_and_order(questionnaire, methods, single_config):
    """测试最终评分为0.6×规则分+0.4×语义分并按最终评分降序"""
    fake = FakeTransport(rule_scores=HIGH_SCORES, semantic_scores={"CRITIC法": 10.0, "层次分析法(AHP)": 6.0})
    orchestrator = RecommendationOrchestrator(fake, configs=single_config)

    bundle = await orchestrator.run_recommendation(questionnaire, methods)

    finals = bundle.final_recommendation.final_recommendations
    for rec in finals:
        assert abs(rec.final_score - (0.6 * rec.rule_score + 0.4 * rec.semantic_score)) < 1e-9
    scores = [rec.final_score for rec in finals]
    assert scores == sorted(scores, reverse=True)
    # CRITIC法: 0.6*9.0+0.4*10 = 9.4，AHP: 0.6*9.5+0.4*6 = 8.1
    assert finals[0].method_name == "CRITIC法"
    assert bundle.final_recommendation.top_recommendation.method_name == "CRITIC法"
    assert bundle.final_recommendation.scoring_weights == {"RULE_WEIGHT": 0.6, "SEMANTIC_WEIGHT": 0.4}


@pytest.mark.asyncio
async def test_low_rule_scores_merge_llm_supplement(questionnaire, methods, single_config):
    """测试规则平均分不高于9.0时合并LLM补充方法"""
    fake = FakeTransport(
        rule_scores=LOW_SCORES,
        suggestions=SUGGESTIONS,
        suggestion_scores={"模糊综合评价法": 8.5, "TOPSIS组合赋权法": 5.5},
    )
    orchestrator = RecommendationOrchestrator(fake, configs=single_config)
    stages = []

    bundle = await orchestrator.run_recommendation(
        questionnaire, methods, on_stage_change=lambda stage, message: stages.append(stage)
    )

    assert bundle.rule_matching_results.needs_llm_supplement is True
    assert abs(bundle.rule_matching_results.average_score - 6.5) < 1e-9
    assert stages == [
        "userNeeds", "dataFeatures", "ruleMatching", "llmCheck", "llmRuleMatching", "llmDetails",
        "semanticAnalysis", "personalization", "finalResult",
    ]

    supplement = bundle.llm_supplement_results
    assert supplement.method_names() == ["模糊综合评价法", "TOPSIS组合赋权法"]
    assert bundle.processing_summary.used_llm_supplement is True

    # 补充方法8.5分排在方法库的7.0和6.5之前，CRITIC法被挤出
    rule_results = bundle.rule_matching_results
    assert [(r.method_name, r.total_rule_score) for r in rule_results.rule_scoring_results] == [
        ("模糊综合评价法", 8.5), ("层次分析法(AHP)", 7.0), ("熵权法", 6.5),
    ]
    assert rule_results.top_candidates == ["模糊综合评价法", "层次分析法(AHP)", "熵权法"]
    assert len(rule_results.all_scoring_results) == len(SAMPLE_METHOD_NAMES)
    assert _final_names(bundle) == rule_results.top_candidates
    assert all(r.semantic_score == 8.0 for r in bundle.final_recommendation.final_recommendations)
    by_name = {r.method_name: r for r in bundle.final_recommendation.final_recommendations}
    assert by_name["模糊综合评价法"].method_source == METHOD_SOURCE_LLM
    assert by_name["模糊综合评价法"].llm_method_details["detail"] == "模糊综合评价法的基本原理"
    assert by_name["层次分析法(AHP)"].method_source == METHOD_SOURCE_CATALOG
    assert by_name["层次分析法(AHP)"].llm_method_details is None

    # 只为方法库之外的方法生成详情
    assert len(fake.stage_calls("method_detail")) == 1
    assert [d.method_name for d in bundle.llm_method_details] == ["模糊综合评价法"]
    assert len(fake.stage_calls("semantic")) == 3
    assert len(fake.stage_calls("personalized")) == 3


@pytest.mark.asyncio
async def test_average_exactly_nine_triggers_supplement(questionnaire, methods, single_config):
    """测试平均分恰好为9.0时仍请求补充"""
    scores = {name: 9.0 for name in SAMPLE_METHOD_NAMES}
    fake = FakeTransport(rule_scores=scores)
    orchestrator = RecommendationOrchestrator(fake, configs=single_config)

    bundle = await orchestrator.run_recommendation(questionnaire, methods)

    assert bundle.rule_matching_results.needs_llm_supplement is True
    assert len(fake.stage_calls("suggestion")) == 1
    # 没有有效补充方法时保留方法库候选
    assert bundle.llm_supplement_results is None
    assert len(bundle.final_recommendation.final_recommendations) == 3


@pytest.mark.asyncio
async def test_average_above_nine_skips_supplement(questionnaire, methods, single_config):
    """测试平均分9.01时不请求补充"""
    scores = {name: 9.01 for name in SAMPLE_METHOD_NAMES}
    fake = FakeTransport(rule_scores=scores)
    orchestrator = RecommendationOrchestrator(fake, configs=single_config)

    bundle = await orchestrator.run_recommendation(questionnaire, methods)

    assert bundle.rule_matching_results.needs_llm_supplement is False
    assert fake.stage_calls("suggestion") == []


@pytest.mark.asyncio
async def test_rule_matching_failure_uses_mock_scores(questionnaire, methods, single_config):
    """测试规则匹配调用失败时使用备用评分"""
    fake = FakeTransport(failing_stages={"rule_matching"})
    orchestrator = RecommendationOrchestrator(fake, configs=single_config)

    bundle = await orchestrator.run_recommendation(questionnaire, methods)

    outcome = bundle.rule_matching_results
    assert outcome.used_fallback is True
    assert [r.total_rule_score for r in outcome.all_scoring_results] == [7.0, 6.5, 6.0, 5.5, 5.0]
    assert outcome.top_candidates == ["层次分析法(AHP)", "熵权法", "CRITIC法"]
    assert outcome.needs_llm_supplement is True
    assert bundle.processing_summary.completion_status == "success"


@pytest.mark.asyncio
async def test_semantic_failure_uses_mock_semantic(questionnaire, methods, single_config):
    """测试语义分析失败时使用7分备用结果"""
    fake = FakeTransport(rule_scores=HIGH_SCORES, failing_stages={"semantic", "personalized"})
    orchestrator = RecommendationOrchestrator(fake, configs=single_config)

    bundle = await orchestrator.run_recommendation(questionnaire, methods)

    for rec in bundle.final_recommendation.final_recommendations:
        assert rec.semantic_score == 7.0
        assert rec.semantic_analysis.is_fallback is True
        assert rec.personalized_implementation == "无法生成个性化实施建议，请咨询专业人士获取实施指导。"
    assert bundle.processing_summary.has_personalized_implementations is False


@pytest.mark.asyncio
async def test_personalized_implementation_text(questionnaire, methods, single_config):
    """测试个性化实施建议转换为文本"""
    fake = FakeTransport(rule_scores=HIGH_SCORES)
    orchestrator = RecommendationOrchestrator(fake, configs=single_config)

    bundle = await orchestrator.run_recommendation(questionnaire, methods)

    top = bundle.final_recommendation.final_recommendations[0]
    assert top.personalized_implementation.startswith(f"建议分两步实施{top.method_name}")
    assert "实施阶段计划:" in top.personalized_implementation
    assert "缓解措施: 插补缺失值" in top.personalized_implementation
    assert bundle.processing_summary.has_personalized_implementations is True


@pytest.mark.asyncio
async def test_caller_profiles_skip_analysis(methods, user_needs, data_features, single_config):
    """测试调用方提供需求画像和数据特征时跳过分析"""
    fake = FakeTransport(rule_scores=HIGH_SCORES)
    orchestrator = RecommendationOrchestrator(fake, configs=single_config)

    bundle = await orchestrator.run_recommendation(
        None, methods, user_needs=user_needs, data_features=data_features
    )

    assert fake.stage_calls("user_needs") == []
    assert fake.stage_calls("data_features") == []
    assert bundle.user_needs == user_needs
    assert bundle.data_analysis == data_features


@pytest.mark.asyncio
async def test_expected_data_features_from_questionnaire(questionnaire, methods, single_config):
    """测试未提供数据特征时根据问卷预期特征分析"""
    fake = FakeTransport(rule_scores=HIGH_SCORES)
    orchestrator = RecommendationOrchestrator(fake, configs=single_config)

    bundle = await orchestrator.run_recommendation(questionnaire, methods)

    data_prompt = fake.stage_calls("data_features")[0]["prompt"]
    assert "预计2层" in data_prompt
    assert bundle.data_analysis["source"] == "questionnaire"
    assert bundle.data_analysis["dataQuality"] == SAMPLE_DATA_FEATURES["dataQuality"]


@pytest.mark.asyncio
async def test_stage_temperatures(questionnaire, methods, single_config):
    """测试各阶段使用固定温度"""
    fake = FakeTransport(rule_scores=LOW_SCORES, suggestions=SUGGESTIONS,
                         suggestion_scores={"模糊综合评价法": 8.5})
    orchestrator = RecommendationOrchestrator(fake, configs=single_config)

    await orchestrator.run_recommendation(questionnaire, methods)

    temperatures = {call["stage"]: call["temperature"] for call in fake.calls}
    assert temperatures["user_needs"] == 0.2
    assert temperatures["rule_matching"] == 0.3
    assert temperatures["suggestion"] == 0.7
    assert temperatures["supplement_scoring"] == 0.3
    assert temperatures["semantic"] == 0.4


@pytest.mark.asyncio
async def test_parallel_batches_use_all_configs(questionnaire, methods, parallel_configs):
    """测试多配置时规则匹配分批并行"""
    fake = FakeTransport(rule_scores=HIGH_SCORES)
    orchestrator = RecommendationOrchestrator(fake, configs=parallel_configs)

    bundle = await orchestrator.run_recommendation(questionnaire, methods)

    rule_calls = fake.stage_calls("rule_matching")
    assert len(rule_calls) == 3
    assert {call["api_id"] for call in rule_calls} == {"default", "api2", "api3"}
    assert len(bundle.rule_matching_results.all_scoring_results) == 5

    details = bundle.processing_summary.batch_processing_details
    assert details.batch_count == 3
    assert details.failed_batches == 0
    assert details.fallback_used is False

    semantic_calls = fake.stage_calls("semantic")
    assert {call["api_id"] for call in semantic_calls} == {"default", "api2", "api3"}


@pytest.mark.asyncio
async def test_cancel_between_phases(questionnaire, methods, single_config):
    """测试阶段通知后取消，后续阶段不再执行"""
    fake = FakeTransport(rule_scores=HIGH_SCORES)
    orchestrator = RecommendationOrchestrator(fake, configs=single_config)
    state = PipelineRunState()

    def on_stage_change(stage, message):
        if stage == "semanticAnalysis":
            state.token.cancel("测试取消")

    result = await orchestrator.run_recommendation(
        questionnaire, methods, on_stage_change=on_stage_change, run_state=state
    )

    assert result is None
    assert state.status == PipelineStatus.CANCELLED
    assert fake.stage_calls("semantic") == []
    assert fake.stage_calls("personalized") == []
    assert state.rule_matching is not None


@pytest.mark.asyncio
async def test_cancelled_before_start(questionnaire, methods, single_config):
    """测试启动前已取消时不发起任何调用"""
    fake = FakeTransport(rule_scores=HIGH_SCORES)
    orchestrator = RecommendationOrchestrator(fake, configs=single_config)
    token = CancellationToken()
    token.cancel()

    result = await orchestrator.run_recommendation(questionnaire, methods, cancel_token=token)

    assert result is None
    assert fake.calls == []


@pytest.mark.asyncio
async def test_empty_catalog_raises(questionnaire, single_config):
    """测试方法库为空时抛出配置错误"""
    fake = FakeTransport()
    orchestrator = RecommendationOrchestrator(fake, configs=single_config)

    with pytest.raises(ConfigurationError):
        await orchestrator.run_recommendation(questionnaire, [])
    assert fake.calls == []


@pytest.mark.asyncio
async def test_configuration_error_returns_fallback_bundle(questionnaire, methods, single_config):
    """测试流程中出现配置错误时返回备用推荐"""
    fake = FakeTransport(configuration_error_stages={"rule_matching"})
    orchestrator = RecommendationOrchestrator(fake, configs=single_config)
    state = PipelineRunState()

    bundle = await orchestrator.run_recommendation(questionnaire, methods, run_state=state)

    assert state.status == PipelineStatus.FAILED_WITH_FALLBACK
    assert bundle.processing_summary.completion_status == "fallback"
    assert bundle.processing_summary.error
    finals = bundle.final_recommendation.final_recommendations
    assert [r.method_name for r in finals] == SAMPLE_METHOD_NAMES[:3]
    assert [r.rule_score for r in finals] == [7.0, 6.5, 6.0]
    # 已完成的需求分析结果保留在备用推荐中
    assert bundle.user_needs["taskDimension"]["domain"] == "企业绩效评价"


@pytest.mark.asyncio
async def test_async_stage_callback_and_callback_errors(questionnaire, methods, single_config):
    """测试协程回调可用，回调异常不影响流程"""
    fake = FakeTransport(rule_scores=HIGH_SCORES)
    orchestrator = RecommendationOrchestrator(fake, configs=single_config)
    messages = []

    async def on_stage_change(stage, message):
        messages.append(message)
        if stage == "ruleMatching":
            raise RuntimeError("回调失败")

    bundle = await orchestrator.run_recommendation(questionnaire, methods, on_stage_change=on_stage_change)

    assert bundle is not None
    assert messages[0] == "正在分析用户需求..."
    assert messages[-1] == "正在生成最终推荐结果..."


@pytest.mark.asyncio
async def test_run_state_records_transitions(questionnaire, methods, single_config):
    """测试运行状态按顺序流转"""
    fake = FakeTransport(rule_scores=LOW_SCORES, suggestions=SUGGESTIONS,
                         suggestion_scores={"模糊综合评价法": 8.5})
    orchestrator = RecommendationOrchestrator(fake, configs=single_config)
    state = PipelineRunState()

    await orchestrator.run_recommendation(questionnaire, methods, run_state=state)

    assert state.status == PipelineStatus.FINALIZED
    assert state.history == [
        PipelineStatus.IDLE,
        PipelineStatus.NEEDS_RESOLVED,
        PipelineStatus.RULE_MATCHED,
        PipelineStatus.SUPPLEMENTED,
        PipelineStatus.DETAILS_READY,
        PipelineStatus.ANALYZED,
    ]
    assert set(state.semantic_results) == set(state.personalized)
