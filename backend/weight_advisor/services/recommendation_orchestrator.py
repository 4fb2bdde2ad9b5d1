"""
推荐流程编排
按固定顺序执行：需求解析 -> 规则匹配 -> （条件）LLM补充 -> 补充方法详情 -> 语义分析与个性化实施 -> 最终评分

- 每个阶段开始前、每次阶段通知后检查取消标记，已取消时直接返回None
- 方法库为空时抛出ConfigurationError，其余异常生成备用推荐结果
"""
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
import inspect
import time

import structlog

from weight_advisor.schemas.recommendation import (
    FinalRecommendation,
    FinalRecommendationSet,
    LLMSupplementResult,
    MethodDetailResult,
    PersonalizedImplementation,
    ProcessingSummary,
    RecommendationBundle,
    RuleMatchingOutcome,
    RuleScoringResult,
    SemanticAnalysisResult,
    compute_final_score,
)
from weight_advisor.schemas.weight_method import WeightMethod
from weight_advisor.services.batch_coordinator import BatchCoordinator
from weight_advisor.services.fallback_results import (
    FALLBACK_IMPLEMENTATION_TEXT,
    build_expected_data_features,
    build_fallback_bundle,
    build_fallback_method_detail,
    build_mock_rule_scoring,
    build_mock_semantic_result,
)
from weight_advisor.services.implementation_advisor import ImplementationAdvisor
from weight_advisor.services.llm_transport import (
    EndpointConfig,
    LLMTransport,
    build_endpoint_configs,
    get_llm_transport,
)
from weight_advisor.services.method_catalog import find_method, validate_catalog
from weight_advisor.services.needs_analyzer import NeedsAnalyzer
from weight_advisor.services.rule_matcher import RuleMatcher, merge_supplement, summarize_rule_scores
from weight_advisor.services.run_manager import CancellationToken, PipelineRunState, PipelineStatus
from weight_advisor.services.semantic_analyzer import SemanticAnalyzer

logger = structlog.get_logger()

StageCallback = Callable[[str, str], Union[None, Awaitable[None]]]

METHOD_SOURCE_CATALOG = "数据库方法"
METHOD_SOURCE_LLM = "LLM推荐"

# 阶段ID与提示信息
STAGE_MESSAGES = {
    "userNeeds": "正在分析用户需求...",
    "dataFeatures": "正在分析数据特征...",
    "ruleMatching": "正在进行规则匹配评分...",
    "llmCheck": "正在检查是否需要LLM补充推荐...",
    "llmRuleMatching": "正在对LLM推荐方法进行评分...",
    "llmDetails": "正在生成LLM推荐方法的详细信息...",
    "semanticAnalysis": "正在进行语义分析...",
    "personalization": "正在生成个性化实施建议...",
    "finalResult": "正在生成最终推荐结果...",
}


class _RunCancelled(Exception):
    """内部信号：阶段之间检测到取消"""


class RecommendationOrchestrator:
    """推荐流程编排器"""

    def __init__(
        self,
        transport: Optional[LLMTransport] = None,
        configs: Optional[List[EndpointConfig]] = None
    ):
        """
        Args:
            transport: LLM调用实例，为None时使用全局实例
            configs: 参与并行调度的API配置，为None时按应用配置生成
        """
        self.transport = transport or get_llm_transport()
        self.configs = configs
        self.needs_analyzer = NeedsAnalyzer(self.transport)
        self.rule_matcher = RuleMatcher(self.transport)
        self.semantic_analyzer = SemanticAnalyzer(self.transport)
        self.implementation_advisor = ImplementationAdvisor(self.transport)

    def _coordinator(self) -> BatchCoordinator:
        configs = self.configs or build_endpoint_configs()
        # 没有可用密钥时仍使用默认配置，由调用时报告配置错误
        return BatchCoordinator(self.transport.available_configs(configs) or configs[:1])

    async def run_recommendation(
        self,
        questionnaire_data: Optional[Dict[str, Any]],
        weight_methods: List[Union[WeightMethod, Dict[str, Any]]],
        user_needs: Optional[Dict[str, Any]] = None,
        data_features: Optional[Dict[str, Any]] = None,
        on_stage_change: Optional[StageCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        run_state: Optional[PipelineRunState] = None
    ) -> Optional[RecommendationBundle]:
        """
        执行完整推荐流程

        Args:
            questionnaire_data: 问卷原始数据
            weight_methods: 方法库
            user_needs: 已有的用户需求画像（提供时跳过需求分析）
            data_features: 已有的数据特征画像（提供时跳过数据特征分析）
            on_stage_change: 阶段通知回调 (stage_id, message)，可以是普通函数或协程函数
            cancel_token: 取消标记
            run_state: 运行状态（由会话管理器创建时传入）

        Returns:
            推荐结果；运行被取消时返回None

        Raises:
            ConfigurationError: 方法库为空或格式错误
        """
        methods = validate_catalog(weight_methods)

        state = run_state or PipelineRunState()
        if cancel_token is not None:
            state.token = cancel_token

        with structlog.contextvars.bound_contextvars(run_id=state.run_id):
            logger.info("开始推荐流程", method_count=len(methods),
                        has_user_needs=user_needs is not None, has_data_features=data_features is not None)
            start_time = time.time()
            try:
                bundle = await self._run_phases(state, questionnaire_data, methods, user_needs,
                                                data_features, on_stage_change)
            except _RunCancelled:
                state.transition(PipelineStatus.CANCELLED)
                logger.info("推荐流程已取消", stage=state.current_stage, reason=state.token.reason)
                return None
            except Exception as e:
                logger.error("推荐流程失败，使用备用推荐", stage=state.current_stage, error=str(e), exc_info=True)
                bundle = build_fallback_bundle(methods, str(e), state.user_needs)
                state.bundle = bundle
                state.transition(PipelineStatus.FAILED_WITH_FALLBACK)
                return bundle

            logger.info("推荐流程完成",
                        final_methods=[r.method_name for r in bundle.final_recommendation.final_recommendations],
                        used_llm_supplement=bundle.processing_summary.used_llm_supplement,
                        duration_ms=int((time.time() - start_time) * 1000))
            return bundle

    async def _run_phases(
        self,
        state: PipelineRunState,
        questionnaire_data: Optional[Dict[str, Any]],
        methods: List[WeightMethod],
        user_needs: Optional[Dict[str, Any]],
        data_features: Optional[Dict[str, Any]],
        on_stage_change: Optional[StageCallback]
    ) -> RecommendationBundle:
        # 1. 需求与数据特征
        await self._enter_stage(state, "userNeeds", on_stage_change)
        if user_needs is None:
            user_needs = await self.needs_analyzer.analyze_user_needs(questionnaire_data)
        state.user_needs = user_needs

        await self._enter_stage(state, "dataFeatures", on_stage_change)
        if data_features is None:
            data_features = await self.needs_analyzer.analyze_data_features(
                build_expected_data_features(questionnaire_data)
            )
        state.data_features = data_features
        state.transition(PipelineStatus.NEEDS_RESOLVED)

        coordinator = self._coordinator()

        # 2. 规则匹配
        await self._enter_stage(state, "ruleMatching", on_stage_change)
        outcome = await self._match_rules(coordinator, methods, user_needs, data_features)
        state.rule_matching = outcome
        state.transition(PipelineStatus.RULE_MATCHED)

        # 3. 条件补充，只有需要补充时才通知llmCheck
        self._check_cancelled(state)
        shortlist = list(outcome.rule_scoring_results)
        supplement: Optional[LLMSupplementResult] = None
        if outcome.needs_llm_supplement:
            await self._enter_stage(state, "llmCheck", on_stage_change)
            logger.info("规则匹配平均分未超过阈值，请求LLM补充推荐", average_score=outcome.average_score)
            supplement = await self.rule_matcher.suggest_methods(
                user_needs, data_features, [m.name for m in methods]
            )
            if supplement is not None:
                await self._enter_stage(state, "llmRuleMatching", on_stage_change)
                scores = await self.rule_matcher.score_suggested_methods(
                    user_needs, data_features, supplement.recommendations
                )
                if scores is None:
                    supplement = None
                else:
                    supplement.rule_scoring_results = scores
                    shortlist = merge_supplement(outcome, scores)
                    # 规则匹配结果与最终候选保持一致，平均分仍为方法库前3名的平均分
                    outcome = outcome.model_copy(update={
                        "rule_scoring_results": shortlist,
                        "top_candidates": [r.method_name for r in shortlist],
                    })
                    state.rule_matching = outcome
                    state.supplement = supplement
                    state.transition(PipelineStatus.SUPPLEMENTED)
                    logger.info("合并补充方法后的候选方法", candidates=[r.method_name for r in shortlist])

        # 4. 非方法库方法的详情
        await self._enter_stage(state, "llmDetails", on_stage_change)
        details = await self._generate_details(coordinator, shortlist, methods, supplement,
                                               user_needs, data_features)
        state.method_details = details
        state.transition(PipelineStatus.DETAILS_READY)

        method_infos = {
            r.method_name: self._method_info(r.method_name, methods, details)
            for r in shortlist
        }
        names = [r.method_name for r in shortlist]

        # 5. 语义分析与个性化实施
        await self._enter_stage(state, "semanticAnalysis", on_stage_change)
        semantic_report = await coordinator.run_per_item(
            names,
            lambda name, config: self.semantic_analyzer.analyze_method(
                name, method_infos[name], user_needs, data_features, config
            ),
            label="语义分析",
        )
        semantic_results: Dict[str, SemanticAnalysisResult] = {
            name: semantic_report.results.get(name) or build_mock_semantic_result(name, method_infos[name])
            for name in names
        }
        state.semantic_results = semantic_results

        await self._enter_stage(state, "personalization", on_stage_change)
        personalized_report = await coordinator.run_per_item(
            names,
            lambda name, config: self.implementation_advisor.generate_personalized_implementation(
                name, user_needs, data_features, config
            ),
            label="个性化实施建议",
        )
        personalized: Dict[str, PersonalizedImplementation] = {
            name: personalized_report.results.get(name) or PersonalizedImplementation(
                method_name=name, personalized_implementation=FALLBACK_IMPLEMENTATION_TEXT, is_fallback=True
            )
            for name in names
        }
        state.personalized = personalized
        state.transition(PipelineStatus.ANALYZED)

        # 6. 最终评分
        await self._enter_stage(state, "finalResult", on_stage_change)
        final_set = self._build_final_set(shortlist, semantic_results, personalized, details, methods)

        bundle = RecommendationBundle(
            user_needs=user_needs,
            data_analysis=data_features,
            rule_matching_results=outcome,
            llm_supplement_results=supplement,
            semantic_analysis_results=[semantic_results[name] for name in names],
            personalized_implementations=[personalized[name] for name in names],
            llm_method_details=list(details.values()),
            final_recommendation=final_set,
            processing_summary=ProcessingSummary(
                used_llm_supplement=supplement is not None,
                average_rule_score=outcome.average_score,
                total_candidates=len(outcome.all_scoring_results)
                + (len(supplement.rule_scoring_results) if supplement else 0),
                final_methods_count=len(final_set.final_recommendations),
                has_personalized_implementations=any(not p.is_fallback for p in personalized.values()),
                completion_status="success",
                batch_processing_details=outcome.batch_processing_details,
            ),
        )
        state.bundle = bundle
        state.transition(PipelineStatus.FINALIZED)
        return bundle

    async def _enter_stage(
        self,
        state: PipelineRunState,
        stage: str,
        on_stage_change: Optional[StageCallback]
    ) -> None:
        """阶段开始前检查取消标记，通知调用方后再检查一次"""
        self._check_cancelled(state)

        state.current_stage = stage
        logger.info("推荐流程阶段", stage=stage)
        if on_stage_change is not None:
            try:
                result = on_stage_change(stage, STAGE_MESSAGES[stage])
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning("阶段通知回调失败", stage=stage, error=str(e))

        self._check_cancelled(state)

    @staticmethod
    def _check_cancelled(state: PipelineRunState) -> None:
        if state.token.cancelled:
            raise _RunCancelled()

    async def _match_rules(
        self,
        coordinator: BatchCoordinator,
        methods: List[WeightMethod],
        user_needs: Dict[str, Any],
        data_features: Dict[str, Any]
    ) -> RuleMatchingOutcome:
        """分批对方法库评分，全部失败时使用备用评分"""
        report = await coordinator.run_batches(
            methods,
            lambda batch, config: self.rule_matcher.score_methods(
                user_needs, data_features, batch, config, use_fallback=False
            ),
            label="规则匹配",
        )

        results: List[RuleScoringResult] = report.results
        used_fallback = False
        if not results:
            logger.warning("规则匹配没有得到有效评分，使用备用评分", method_count=len(methods))
            results = build_mock_rule_scoring(methods)
            used_fallback = True

        outcome = summarize_rule_scores(results, used_fallback, report.details)
        logger.info("规则匹配结果",
                    top_candidates=outcome.top_candidates,
                    average_score=round(outcome.average_score, 2),
                    needs_llm_supplement=outcome.needs_llm_supplement)
        return outcome

    async def _generate_details(
        self,
        coordinator: BatchCoordinator,
        shortlist: List[RuleScoringResult],
        methods: List[WeightMethod],
        supplement: Optional[LLMSupplementResult],
        user_needs: Dict[str, Any],
        data_features: Dict[str, Any]
    ) -> Dict[str, MethodDetailResult]:
        """为候选列表中不在方法库里的方法生成详情"""
        llm_names = [r.method_name for r in shortlist if find_method(methods, r.method_name) is None]
        if not llm_names:
            return {}

        def suggestion_for(name: str) -> Optional[Dict[str, Any]]:
            return supplement.find(name) if supplement else None

        report = await coordinator.run_per_item(
            llm_names,
            lambda name, config: self.implementation_advisor.generate_method_detail(
                name, suggestion_for(name), user_needs, data_features, config
            ),
            label="方法详情生成",
        )
        return {
            name: report.results.get(name) or MethodDetailResult(
                method_name=name,
                detail=build_fallback_method_detail(name, suggestion_for(name)),
                is_fallback=True,
            )
            for name in llm_names
        }

    @staticmethod
    def _method_info(
        method_name: str,
        methods: List[WeightMethod],
        details: Dict[str, MethodDetailResult]
    ) -> Dict[str, Any]:
        method = find_method(methods, method_name)
        if method is not None:
            return method.to_prompt_dict()
        return details[method_name].detail if method_name in details else {"name": method_name}

    @staticmethod
    def _build_final_set(
        shortlist: List[RuleScoringResult],
        semantic_results: Dict[str, SemanticAnalysisResult],
        personalized: Dict[str, PersonalizedImplementation],
        details: Dict[str, MethodDetailResult],
        methods: List[WeightMethod]
    ) -> FinalRecommendationSet:
        """最终评分 = 0.6 × 规则分 + 0.4 × 语义分，按最终评分降序"""
        finals: List[FinalRecommendation] = []
        for rule in shortlist:
            name = rule.method_name
            semantic = semantic_results[name]
            from_catalog = find_method(methods, name) is not None
            finals.append(FinalRecommendation(
                method_name=name,
                rule_score=rule.total_rule_score,
                semantic_score=semantic.semantic_match_score,
                final_score=compute_final_score(rule.total_rule_score, semantic.semantic_match_score),
                method_source=METHOD_SOURCE_CATALOG if from_catalog else METHOD_SOURCE_LLM,
                rule_analysis=rule,
                semantic_analysis=semantic,
                personalized_implementation=personalized[name].personalized_implementation,
                llm_method_details=None if from_catalog or name not in details else details[name].detail,
            ))

        finals.sort(key=lambda f: -f.final_score)
        return FinalRecommendationSet(
            final_recommendations=finals,
            top_recommendation=finals[0] if finals else None,
        )
