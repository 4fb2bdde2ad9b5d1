"""
权重方法库测试
"""
import json
import pytest

from utils.fake_llm import make_method, sample_methods
from weight_advisor.services.method_catalog import (
    filter_methods_for_prompt,
    find_method,
    get_builtin_catalog,
    load_weight_methods,
    validate_catalog,
)
from weight_advisor.utils.pipeline_exception import ConfigurationError


def test_builtin_catalog():
    """测试内置方法库可加载且名称唯一"""
    methods = get_builtin_catalog()
    names = [m.name for m in methods]
    assert len(methods) == 20
    assert len(set(names)) == len(names)
    assert "熵权法" in names
    assert "Best-Worst法(BWM)" in names
    assert {m.type for m in methods} == {"主观赋权法", "客观赋权法", "组合赋权法"}


def test_validate_catalog_empty():
    """测试空方法库"""
    with pytest.raises(ConfigurationError) as exc_info:
        validate_catalog([])
    assert exc_info.value.to_dict()["error_type"] == "configuration_error"

    with pytest.raises(ConfigurationError):
        validate_catalog(None)


def test_validate_catalog_duplicates():
    """测试方法名称重复"""
    with pytest.raises(ConfigurationError) as exc_info:
        validate_catalog([make_method("熵权法"), make_method("熵权法")])
    assert exc_info.value.error_details["duplicates"] == ["熵权法"]


def test_validate_catalog_invalid_entry():
    """测试条目格式错误"""
    with pytest.raises(ConfigurationError) as exc_info:
        validate_catalog([make_method("熵权法"), {"type": "客观赋权法"}])
    assert "第2项" in exc_info.value.error_message


def test_validate_catalog_keeps_models():
    """测试已经是WeightMethod的条目直接使用"""
    methods = sample_methods()
    assert validate_catalog(methods) == methods


def test_load_custom_catalog(tmp_path):
    """测试从自定义路径加载方法库"""
    path = tmp_path / "methods.json"
    path.write_text(json.dumps([make_method("自定义方法")], ensure_ascii=False), encoding="utf-8")

    methods = load_weight_methods(path)
    assert [m.name for m in methods] == ["自定义方法"]
    assert methods[0].suit_conditions == ["指标为定量数据"]


def test_load_catalog_errors(tmp_path):
    """测试方法库文件格式错误"""
    not_list = tmp_path / "object.json"
    not_list.write_text('{"name": "熵权法"}', encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_weight_methods(not_list)

    with pytest.raises(ConfigurationError):
        load_weight_methods(tmp_path / "missing.json")


def test_filter_methods_for_prompt():
    """测试提示词中的方法信息精简"""
    filtered = filter_methods_for_prompt(sample_methods(["熵权法"]))[0]

    assert "mathematicalModel" not in filtered
    assert "calculationExample" not in filtered
    assert filtered["advantages"] == ["客观性强", "计算简单", "可重复", "...(更多优势已省略)"]
    assert filtered["implementationSteps"] == ["数据标准化", "计算指标权重"]
    assert filtered["suitConditions"] == ["指标为定量数据"]


def test_find_method():
    """测试按名称查找方法"""
    methods = sample_methods()
    assert find_method(methods, "CRITIC法").name == "CRITIC法"
    assert find_method(methods, "不存在") is None
