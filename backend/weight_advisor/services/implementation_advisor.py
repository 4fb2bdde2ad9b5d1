"""
实施建议服务
- 个性化实施建议（分阶段计划、风险缓解、特殊需求处理）
- LLM补充方法的详细描述
"""
from typing import Any, Dict, List, Optional

import structlog

from weight_advisor.schemas.recommendation import MethodDetailResult, PersonalizedImplementation
from weight_advisor.services.fallback_results import FALLBACK_IMPLEMENTATION_TEXT, build_fallback_method_detail
from weight_advisor.services.llm_stage import LLMStage
from weight_advisor.services.llm_transport import EndpointConfig
from weight_advisor.services.prompt_templates import PromptTemplateId

logger = structlog.get_logger()

IMPLEMENTATION_TEMPERATURE = 0.4


def _section(data: Any, key: str) -> Dict[str, Any]:
    value = data.get(key) if isinstance(data, dict) else None
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def format_personalized_guidance(guidance: Dict[str, Any]) -> str:
    """将个性化实施建议JSON转换为文本"""
    strategy = _section(guidance, "implementationStrategy")
    text = str(strategy.get("recommendedApproach") or "")

    phases = _list(_section(guidance, "stepByStepPlan").get("phases"))
    if phases:
        text += "\n\n实施阶段计划:"
        for index, phase in enumerate(phases, 1):
            if not isinstance(phase, dict):
                continue
            text += f"\n{index}. {phase.get('phaseName', '')} (预计耗时: {phase.get('duration') or '未指定'})"
            tasks = _list(phase.get("tasks"))
            if tasks:
                text += "\n   任务:"
                for task in tasks:
                    text += f"\n   - {task}"

    mitigation = _section(guidance, "riskMitigation")
    risks = _list(mitigation.get("potentialRisks"))
    measures = _list(mitigation.get("preventiveMeasures"))
    if risks:
        text += "\n\n风险缓解:"
        for index, risk in enumerate(risks, 1):
            text += f"\n{index}. {risk}"
            if index <= len(measures):
                text += f"\n   缓解措施: {measures[index - 1]}"

    special = _section(guidance, "customizations").get("specialRequirementsHandling")
    if special:
        text += f"\n\n特殊需求处理方案:\n{special}"

    return text.strip()


def flatten_method_details(method_name: str, details: Dict[str, Any]) -> Dict[str, Any]:
    """将methodDetails结构展开为与方法库一致的字段"""
    foundation = _section(details, "theoreticalFoundation")
    implementation = _section(details, "detailedImplementation")
    applicability = _section(details, "applicabilityAnalysis")
    characteristics = _section(details, "methodCharacteristics")

    steps = (
        _list(implementation.get("preparationSteps"))
        + _list(implementation.get("calculationSteps"))
        + _list(implementation.get("validationSteps"))
    )
    conditions = _list(applicability.get("suitableConditions"))

    return {
        "name": details.get("name") or method_name,
        "detail": foundation.get("basicPrinciple") or details.get("detail") or "",
        "type": details.get("category") or details.get("type") or "",
        "suitConditions": conditions,
        "advantages": _list(characteristics.get("keyAdvantages")),
        "limitations": _list(characteristics.get("limitations")),
        "implementationSteps": steps,
        "suitableScenarios": _list(details.get("suitableScenarios")) or conditions,
        "mathematicalModel": foundation.get("mathematicalModel") or "",
        "calculationExample": implementation.get("calculationExample") or "",
        "commonPitfalls": _list(_section(details, "implementationGuidance").get("commonPitfalls")),
    }


class ImplementationAdvisor(LLMStage):
    """实施建议生成器"""

    async def generate_personalized_implementation(
        self,
        method_name: str,
        user_needs: Dict[str, Any],
        data_features: Optional[Dict[str, Any]],
        config: Optional[EndpointConfig] = None
    ) -> PersonalizedImplementation:
        """
        生成个性化实施建议

        Returns:
            实施建议文本；失败时为固定的提示文本
        """
        result = await self._invoke_json(
            PromptTemplateId.PERSONALIZED_IMPLEMENTATION,
            {"methodName": method_name, "P": user_needs, "dataFeatures": data_features or {}},
            IMPLEMENTATION_TEMPERATURE,
            required_keys=("personalizedGuidance",),
            config=config,
            stage="个性化实施建议",
        )
        api_id = config.id if config else None

        guidance = result["personalizedGuidance"] if result else None
        text = format_personalized_guidance(guidance) if isinstance(guidance, dict) else ""
        if not text:
            return PersonalizedImplementation(
                method_name=method_name,
                personalized_implementation=FALLBACK_IMPLEMENTATION_TEXT,
                api_id=api_id,
                is_fallback=True,
            )

        logger.info("个性化实施建议生成完成", method=method_name, api_id=api_id)
        return PersonalizedImplementation(
            method_name=method_name,
            personalized_implementation=text,
            raw_result=result,
            api_id=api_id,
        )

    async def generate_method_detail(
        self,
        method_name: str,
        suggestion: Optional[Dict[str, Any]],
        user_needs: Dict[str, Any],
        data_features: Optional[Dict[str, Any]],
        config: Optional[EndpointConfig] = None
    ) -> MethodDetailResult:
        """
        为LLM补充推荐的方法生成详细描述

        支持 methodDetails 嵌套结构和直接返回方法库字段的扁平结构
        """
        result = await self._invoke_json(
            PromptTemplateId.METHOD_DETAIL,
            {"methodInfo": suggestion or {"method": method_name}, "userNeeds": user_needs,
             "dataFeatures": data_features or {}},
            IMPLEMENTATION_TEMPERATURE,
            config=config,
            stage="方法详情生成",
        )

        if result and isinstance(result.get("methodDetails"), dict):
            detail = flatten_method_details(method_name, result["methodDetails"])
        elif result and result.get("detail"):
            detail = {**build_fallback_method_detail(method_name, suggestion), **result}
        else:
            logger.warning("方法详情生成失败，使用补充推荐中的基本信息", method=method_name)
            return MethodDetailResult(
                method_name=method_name,
                detail=build_fallback_method_detail(method_name, suggestion),
                is_fallback=True,
            )

        logger.info("方法详情生成完成", method=method_name)
        return MethodDetailResult(method_name=method_name, detail=detail)
