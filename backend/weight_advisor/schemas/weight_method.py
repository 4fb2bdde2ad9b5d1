"""
权重方法相关的Pydantic Schema
"""
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Any, Dict, List, Optional


class WeightMethod(BaseModel):
    """权重方法库条目（只读参考数据）"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    name: str = Field(min_length=1, description="方法名称（唯一键）")
    type: str = Field(description="主观赋权法/客观赋权法/组合赋权法")
    detail: str = ""
    suit_conditions: List[str] = []
    advantages: List[str] = []
    limitations: List[str] = []
    implementation_steps: List[str] = []
    suitable_scenarios: List[str] = []
    characteristics: Dict[str, Any] = {}
    dimensional_attributes: Dict[str, Any] = {}
    mathematical_model: Optional[str] = None
    calculation_example: Optional[str] = None

    def to_prompt_dict(self) -> Dict[str, Any]:
        """转换为提示词使用的camelCase字典"""
        return self.model_dump(by_alias=True, exclude_none=True)


class MethodSummary(BaseModel):
    """方法库概要"""
    name: str
    type: str
    detail: str = ""
