"""
权重方法库
- 加载内置或自定义的方法库（只读参考数据）
- 校验方法库非空且名称唯一
- 为提示词精简方法信息
"""
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union
import json

import structlog
from pydantic import ValidationError

from weight_advisor.core.config import settings
from weight_advisor.schemas.weight_method import WeightMethod
from weight_advisor.utils.pipeline_exception import ConfigurationError

logger = structlog.get_logger()

BUILTIN_CATALOG_PATH = Path(__file__).resolve().parent.parent / "data" / "weight_methods.json"

# 提示词中列表字段保留的条数及省略说明
PROMPT_LIST_LIMIT = 3
_OMITTED_MARKERS = {
    "implementationSteps": "...(更多步骤已省略)",
    "advantages": "...(更多优势已省略)",
    "limitations": "...(更多局限性已省略)",
}

_builtin_catalog: Optional[List[WeightMethod]] = None


def validate_catalog(methods: Optional[Iterable[Union[WeightMethod, Dict[str, Any]]]]) -> List[WeightMethod]:
    """
    校验方法库

    Args:
        methods: 方法列表（字典或WeightMethod）

    Returns:
        WeightMethod列表

    Raises:
        ConfigurationError: 方法库为空、条目格式错误或名称重复
    """
    validated: List[WeightMethod] = []
    for index, method in enumerate(methods or []):
        if isinstance(method, WeightMethod):
            validated.append(method)
            continue
        try:
            validated.append(WeightMethod.model_validate(method))
        except ValidationError as e:
            raise ConfigurationError(f"权重方法库第{index + 1}项格式错误", {"error": str(e)})

    if not validated:
        raise ConfigurationError("权重方法库为空，无法进行推荐")

    seen = set()
    duplicates = []
    for method in validated:
        if method.name in seen:
            duplicates.append(method.name)
        seen.add(method.name)
    if duplicates:
        raise ConfigurationError("权重方法名称重复", {"duplicates": duplicates})

    return validated


def load_weight_methods(path: Optional[Union[str, Path]] = None) -> List[WeightMethod]:
    """
    从JSON文件加载方法库

    Args:
        path: 文件路径，为None时使用配置的路径或内置方法库
    """
    catalog_path = Path(path or settings.WEIGHT_METHODS_PATH or BUILTIN_CATALOG_PATH)
    try:
        with open(catalog_path, "r", encoding="utf-8") as f:
            raw_methods = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigurationError("权重方法库读取失败", {"path": str(catalog_path), "error": str(e)})

    if not isinstance(raw_methods, list):
        raise ConfigurationError("权重方法库格式错误，应为数组", {"path": str(catalog_path)})

    methods = validate_catalog(raw_methods)
    logger.info("权重方法库加载完成", path=str(catalog_path), method_count=len(methods))
    return methods


def get_builtin_catalog() -> List[WeightMethod]:
    """获取启动时加载的方法库（单例模式）"""
    global _builtin_catalog
    if _builtin_catalog is None:
        _builtin_catalog = load_weight_methods()
    return _builtin_catalog


def find_method(methods: Iterable[WeightMethod], name: str) -> Optional[WeightMethod]:
    """按名称查找方法"""
    for method in methods:
        if method.name == name:
            return method
    return None


def filter_methods_for_prompt(methods: Iterable[WeightMethod]) -> List[Dict[str, Any]]:
    """
    精简方法信息用于提示词

    移除数学模型和计算示例，实施步骤/优势/局限性最多保留3条并追加省略说明
    """
    filtered = []
    for method in methods:
        data = method.to_prompt_dict()
        data.pop("mathematicalModel", None)
        data.pop("calculationExample", None)
        for key, marker in _OMITTED_MARKERS.items():
            items = data.get(key) or []
            if len(items) > PROMPT_LIST_LIMIT:
                data[key] = items[:PROMPT_LIST_LIMIT] + [marker]
        filtered.append(data)
    return filtered
