"""
提示词模板库
- 每个LLM任务一个模板，使用 {{placeholder}} 占位符（支持 {{P.taskDimension.domain}} 形式的点路径）
- render_prompt 负责替换占位符，未解析的占位符替换为空字符串
"""
import json
import re
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel


class PromptTemplateId(str, Enum):
    """提示词模板ID"""
    USER_NEEDS_ANALYSIS = "user_needs_analysis"
    DATA_ANALYSIS = "data_analysis"
    RULE_MATCHING = "rule_matching"
    LLM_METHOD_RULE_SCORING = "llm_method_rule_scoring"
    SEMANTIC_ANALYSIS = "semantic_analysis"
    METHOD_RECOMMENDATION = "method_recommendation"
    METHOD_DETAIL = "method_detail"
    PERSONALIZED_IMPLEMENTATION = "personalized_implementation"


USER_NEEDS_ANALYSIS_PROMPT = """
你是一位用户需求分析专家。请分析以下问卷数据，从任务维度、数据维度、用户维度和环境维度提取结构化的需求特征。

### 问卷数据：
{{questionnaireData}}

### 分析要求：
1. 提取用户的核心需求特征，评估各维度的要求程度
2. 识别潜在的限制条件并总结优先级
3. 如果 userDimension.supplementaryText 中有补充说明：
   - 将可映射的信息填入对应维度属性
   - 无法映射的重要信息加入 userDimension.specialRequirements
   - 关键洞察加入 userDimension.supplementaryInsights
   - 补充说明不得与问卷中已有的明确回答冲突

### 输出格式（只返回JSON）：
{
  "taskDimension": {
    "domain": "评价领域",
    "purpose": "评价目的",
    "evaluationNature": "描述性/预测性/优化性",
    "complexity": "高/中/低",
    "applicationScope": "结果应用范围"
  },
  "dataDimension": {
    "indicatorCount": "少量/中等/大量",
    "variableType": "定量/定性/混合",
    "dataQualityIssues": ["数据质量问题"]
  },
  "userDimension": {
    "precision": "高/中/低",
    "structure": "指标体系结构",
    "relation": "指标间关系",
    "methodPreference": "主观/客观/组合/无偏好",
    "knowledgeLevel": "初级/中级/高级/专家",
    "riskTolerance": "低/中/高",
    "specialRequirements": ["特殊需求"],
    "supplementaryInsights": ["补充说明洞察"]
  },
  "environmentDimension": {
    "expertiseLevel": "充足/有限/无",
    "timeConstraint": "紧迫/适中/充裕",
    "computingResource": "有限/充足/高级",
    "environmentConstraints": ["环境约束"]
  },
  "constraints": ["限制条件"],
  "priorities": ["优先级"]
}
"""

DATA_ANALYSIS_PROMPT = """
你是一位数据分析专家。请根据以下数据特征，对数据的结构、质量、分布和相关性进行评估，并判断数据对不同类型权重方法的适用性。

### 数据特征：
{{dataFeatures}}

### 输出格式（只返回JSON）：
{
  "dataStructure": {
    "indicatorCount": "指标数量",
    "variableTypes": "定量/定性/混合",
    "hierarchyLevels": "层次结构描述",
    "indicatorCountRange": "少量/中等/大量"
  },
  "dataQuality": {
    "completeness": 1-10,
    "consistency": 1-10,
    "reliability": 1-10,
    "missingValuePattern": "缺失值情况",
    "outlierSituation": "异常值情况"
  },
  "distributionFeatures": {
    "distribution": "分布描述",
    "sampleSize": "样本量评估",
    "variability": "变异程度"
  },
  "correlationFeatures": {
    "overallCorrelation": "整体相关程度",
    "multicollinearityIssues": "多重共线性情况"
  },
  "limitations": ["数据限制"],
  "methodSuitability": {
    "objectiveMethodSuitability": 1-10,
    "subjectiveMethodSuitability": 1-10,
    "hybridMethodSuitability": 1-10
  }
}
"""

RULE_MATCHING_PROMPT = """
你是一位权重方法规则匹配专家。请根据用户需求特征和数据特征，从任务、数据、用户、环境四个维度对下列每一个权重方法进行匹配评分（0-10分）。

### 用户需求特征：
{{userNeeds}}

### 数据特征：
{{dataFeatures}}

### 权重方法库：
{{weightMethods}}

### 评分要求：
1. 必须为方法库中的每一个方法给出评分，methodName 与方法库中的 name 完全一致
2. totalRuleScore 为四个维度得分的综合分
3. 评分标准：9-10 高度匹配；7-8 较好匹配；5-6 一般匹配；3-4 匹配度较低；0-2 不匹配

### 输出格式（只返回JSON）：
{
  "ruleScoringResults": [
    {
      "methodName": "方法名称",
      "dimensionalScores": {
        "taskDimensionMatch": 7.5,
        "dataDimensionMatch": 8.0,
        "userDimensionMatch": 6.5,
        "environmentDimensionMatch": 7.0
      },
      "totalRuleScore": 7.3,
      "matchingExplanation": "简要匹配分析",
      "recommendationReason": "简要推荐理由"
    }
  ]
}
"""

LLM_METHOD_RULE_SCORING_PROMPT = """
你是一位权重方法评估专家。请对以下补充推荐的权重方法进行规则评分，评分口径与方法库中的方法保持一致。

### 待评分方法：
{{llmMethods}}

### 用户需求特征：
{{userNeeds}}

### 数据特征：
{{dataFeatures}}

### 评分维度（0-10分）：
1. 任务维度匹配度：是否适合评价领域、目标性质与问题复杂度
2. 数据维度匹配度：对数据量、数据质量和变量类型的要求是否合理
3. 用户维度匹配度：是否符合用户知识水平、精确度要求和方法偏好
4. 环境维度匹配度：是否满足时间、计算资源和专家资源约束

### 输出格式（只返回JSON，methodName 必须与待评分方法名称一致）：
{
  "ruleScoringResults": [
    {
      "methodName": "方法名称",
      "dimensionalScores": {
        "taskDimensionMatch": 8.0,
        "dataDimensionMatch": 7.0,
        "userDimensionMatch": 8.5,
        "environmentDimensionMatch": 7.0
      },
      "totalRuleScore": 7.6,
      "matchingExplanation": "简要评分理由",
      "recommendationReason": "推荐原因"
    }
  ]
}
"""

SEMANTIC_ANALYSIS_PROMPT = """
你是一位权重方法推荐专家。请分析以下问题画像与候选方法之间的语义匹配程度。

### 问题画像：
任务维度：
- 评价领域：{{P.taskDimension.domain}}
- 评价目标性质：{{P.taskDimension.evaluationNature}}
- 问题复杂度：{{P.taskDimension.complexity}}
- 应用范围：{{P.taskDimension.applicationScope}}

数据维度：
- 指标数量：{{P.dataDimension.indicatorCount}}
- 变量类型：{{P.dataDimension.variableType}}
- 数据质量问题：{{P.dataDimension.dataQualityIssues}}

用户维度：
- 精确度要求：{{P.userDimension.precision}}
- 指标结构：{{P.userDimension.structure}}
- 指标关系：{{P.userDimension.relation}}
- 方法偏好：{{P.userDimension.methodPreference}}
- 知识水平：{{P.userDimension.knowledgeLevel}}
- 风险承受能力：{{P.userDimension.riskTolerance}}
- 特殊需求：{{P.userDimension.specialRequirements}}
- 补充说明洞察：{{P.userDimension.supplementaryInsights}}

环境维度：
- 专家资源：{{P.environmentDimension.expertiseLevel}}
- 时间约束：{{P.environmentDimension.timeConstraint}}
- 计算资源：{{P.environmentDimension.computingResource}}
- 环境约束：{{P.environmentDimension.environmentConstraints}}

数据特征摘要：
{{dataFeatures}}

### 候选方法：
- 方法名称：{{M.name}}
- 方法类别：{{M.type}}
- 原理简述：{{M.detail}}
- 适用条件：{{M.suitConditions}}
- 优点：{{M.advantages}}
- 局限性：{{M.limitations}}
- 实施步骤：{{M.implementationSteps}}

### 分析要求：
1. 关注方法特性与问题需求的本质契合度，而不仅是表面匹配
2. 重视用户的补充说明洞察
3. 权衡优势与局限性在当前情境下的实际影响，评估实施中的实际挑战

### 输出格式（只返回JSON）：
{
  "semanticMatchScore": 0-10,
  "matchExplanation": "匹配程度说明",
  "advantages": ["在此情境下的优势"],
  "risks": ["潜在风险"],
  "implementationAdvice": ["实施建议"],
  "suitabilityLevel": "高/中/低",
  "supplementaryImpact": ["补充说明对匹配度的影响"]
}
"""

METHOD_RECOMMENDATION_PROMPT = """
你是一位权重方法创新专家，熟悉统计学、运筹优化和机器学习。

**约束条件**：
- 只能推荐方法库中不存在的权重确定方法
- 禁止推荐与方法库中名称相同或实质相同的方法
- 只推荐两个方法

### 方法库已有方法（禁止推荐）：
{{weightMethodNames}}

### 用户需求特征：
{{userNeeds}}

### 数据特征：
{{dataFeatures}}

### 推荐范围：
主观赋权法、客观赋权法、组合赋权法或机器学习方法中的任一类别，需具有明确的实用性。

### 输出格式（只返回JSON）：
{
  "recommendations": [
    {
      "method": "方法名称",
      "type": "主观赋权法/客观赋权法/组合赋权法/机器学习方法",
      "detail": "方法原理和核心思想",
      "suitConditions": ["适用条件"],
      "advantages": ["主要优势"],
      "limitations": ["主要局限性"],
      "implementationSteps": ["实施步骤"],
      "suitability": "高/中/低",
      "reason": "推荐理由"
    }
  ],
  "rationale": "推荐逻辑说明"
}
"""

METHOD_DETAIL_PROMPT = """
你是一位权重方法专家。请为以下补充推荐的权重方法生成详细描述和实施指导。

### 方法基本信息：
{{methodInfo}}

### 用户需求特征：
{{userNeeds}}

### 数据特征：
{{dataFeatures}}

### 要求：
包括数学原理与理论基础、详细实施步骤、适用条件、优势与局限性、常见陷阱，
数学模型和计算示例使用LaTeX格式。

### 输出格式（只返回JSON）：
{
  "methodDetails": {
    "name": "方法名称",
    "category": "方法类别",
    "theoreticalFoundation": {
      "basicPrinciple": "基本原理",
      "mathematicalModel": "LaTeX格式的数学模型"
    },
    "detailedImplementation": {
      "preparationSteps": ["准备步骤"],
      "calculationSteps": ["计算步骤"],
      "validationSteps": ["验证步骤"],
      "calculationExample": "LaTeX格式的计算示例"
    },
    "applicabilityAnalysis": {
      "suitableConditions": ["适用条件"],
      "dataRequirements": "数据要求"
    },
    "methodCharacteristics": {
      "keyAdvantages": ["主要优势"],
      "limitations": ["局限性"]
    },
    "implementationGuidance": {
      "commonPitfalls": ["常见陷阱"]
    }
  }
}
"""

PERSONALIZED_IMPLEMENTATION_PROMPT = """
你是一位权重方法实施顾问。请根据用户的具体情况为以下权重方法提供个性化的实施建议。

### 权重方法：
{{methodName}}

### 数据特征：
{{dataFeatures}}

### 用户画像：
- 知识水平：{{P.userDimension.knowledgeLevel}}
- 方法偏好：{{P.userDimension.methodPreference}}
- 精确度要求：{{P.userDimension.precision}}
- 风险承受能力：{{P.userDimension.riskTolerance}}
- 时间约束：{{P.environmentDimension.timeConstraint}}
- 计算资源：{{P.environmentDimension.computingResource}}
- 专家资源：{{P.environmentDimension.expertiseLevel}}
- 特殊需求：{{P.userDimension.specialRequirements}}
- 补充洞察：{{P.userDimension.supplementaryInsights}}

### 要求：
给出推荐的实施方案、分阶段实施计划（每阶段包含耗时和任务）、风险及对应的预防措施，以及特殊需求的处理方案。

### 输出格式（只返回JSON）：
{
  "personalizedGuidance": {
    "implementationStrategy": {
      "recommendedApproach": "推荐的实施方案",
      "difficultyAssessment": "实施难度评估"
    },
    "stepByStepPlan": {
      "phases": [
        {"phaseName": "阶段名称", "duration": "预计耗时", "tasks": ["任务"]}
      ],
      "totalEstimatedTime": "总预计时间"
    },
    "riskMitigation": {
      "potentialRisks": ["潜在风险"],
      "preventiveMeasures": ["与风险一一对应的预防措施"]
    },
    "customizations": {
      "specialRequirementsHandling": "特殊需求处理方案"
    }
  }
}
"""


TEMPLATES: Dict[PromptTemplateId, str] = {
    PromptTemplateId.USER_NEEDS_ANALYSIS: USER_NEEDS_ANALYSIS_PROMPT,
    PromptTemplateId.DATA_ANALYSIS: DATA_ANALYSIS_PROMPT,
    PromptTemplateId.RULE_MATCHING: RULE_MATCHING_PROMPT,
    PromptTemplateId.LLM_METHOD_RULE_SCORING: LLM_METHOD_RULE_SCORING_PROMPT,
    PromptTemplateId.SEMANTIC_ANALYSIS: SEMANTIC_ANALYSIS_PROMPT,
    PromptTemplateId.METHOD_RECOMMENDATION: METHOD_RECOMMENDATION_PROMPT,
    PromptTemplateId.METHOD_DETAIL: METHOD_DETAIL_PROMPT,
    PromptTemplateId.PERSONALIZED_IMPLEMENTATION: PERSONALIZED_IMPLEMENTATION_PROMPT,
}

_PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")
_MISSING = object()


def _resolve(variables: Mapping[str, Any], path: str) -> Any:
    """先按完整键查找，再沿点路径逐级查找"""
    if path in variables:
        return variables[path]

    head, _, rest = path.partition(".")
    if not rest or head not in variables:
        return _MISSING

    value = variables[head]
    for key in rest.split("."):
        if isinstance(value, BaseModel):
            value = value.model_dump(by_alias=True)
        if isinstance(value, Mapping) and key in value:
            value = value[key]
        else:
            return _MISSING
    return value


def _stringify(value: Any, dotted: bool) -> str:
    if value is _MISSING or value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return json.dumps(value)
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, BaseModel):
        value = value.model_dump(by_alias=True, exclude_none=True)
    # 画像字段中的标量列表按逗号拼接，整体对象按JSON序列化
    if dotted and isinstance(value, (list, tuple)) and all(
        not isinstance(item, (dict, list, tuple)) for item in value
    ):
        return ",".join(str(item) for item in value)
    return json.dumps(value, ensure_ascii=False, indent=2, default=str)


def render_template(template: str, variables: Optional[Mapping[str, Any]] = None) -> str:
    """替换模板字符串中的全部占位符"""
    variables = variables or {}

    def replace(match: "re.Match[str]") -> str:
        path = match.group(1)
        return _stringify(_resolve(variables, path), "." in path)

    return _PLACEHOLDER_PATTERN.sub(replace, template)


def render_prompt(template_id: PromptTemplateId, variables: Optional[Mapping[str, Any]] = None) -> str:
    """
    渲染提示词

    Args:
        template_id: 模板ID
        variables: 占位符变量，值可以是字符串、数字、列表、字典或Pydantic模型

    Returns:
        替换后的提示词文本

    Raises:
        ValueError: 模板ID不存在
    """
    try:
        template = TEMPLATES[PromptTemplateId(template_id)]
    except (KeyError, ValueError):
        raise ValueError(f"未知的提示词模板: {template_id}")
    return render_template(template, variables).strip()


def list_placeholders(template_id: PromptTemplateId) -> Tuple[str, ...]:
    """列出模板中的占位符（去重，保持出现顺序）"""
    found = _PLACEHOLDER_PATTERN.findall(TEMPLATES[PromptTemplateId(template_id)])
    return tuple(dict.fromkeys(found))
