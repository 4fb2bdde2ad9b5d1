"""
LLM响应JSON修复
- 每个修复策略都是独立的纯函数 (str) -> str | None，返回None表示该策略不适用
- 策略按由轻到重的顺序组合成流水线，第一个能被json解析的候选结果胜出
- parse_json_from_text 永不抛出异常，全部失败时返回None，由调用方使用备用结果
"""
import json
import re
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

import structlog

logger = structlog.get_logger()

Strategy = Callable[[str], Optional[str]]
JSONValue = Union[dict, list]

_OPENERS = {"{": "}", "[": "]"}
_CLOSERS = {"}": "{", "]": "["}

KNOWN_TOP_LEVEL_KEYS = (
    "taskDimension",
    "dataDimension",
    "userDimension",
    "environmentDimension",
    "ruleScoringResults",
    "recommendations",
    "methodDetails",
    "personalizedGuidance",
)

_FENCED_BLOCK = re.compile(r"```(?:json|JSON)?\s*\n?([\s\S]*?)```")
_LEADING_FENCE = re.compile(r"^```(?:json|JSON)?\s*\n?")
_TRAILING_FENCE = re.compile(r"\n?```\s*$")
_BRACKET_BLOCK = re.compile(r"\{[\s\S]*\}|\[[\s\S]*\]")
_LEADING_CHATTER = re.compile(
    r"^\s*(?:以下是|下面是|这是|根据您|好的|当然|Here(?:'s| is| are)|Sure|Below is|Certainly)[^\n{\[]*\n?",
    re.IGNORECASE,
)
_TRAILING_CHATTER = re.compile(
    r"\n[^\n{}\[\]]*(?:希望|如有|如果您|请注意|以上|Hope this|Let me know|Feel free|Note:)[^\n{}\[\]]*\s*$",
    re.IGNORECASE,
)
_BLANK_LINES = re.compile(r"\n\s*\n+")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_VALUE_BOUNDARY = re.compile(r'["}\]\d]\s*,')


def _scan(text: str) -> Tuple[List[str], bool]:
    """扫描括号栈（忽略字符串内部的括号），返回未闭合的开括号和是否停在字符串内部"""
    stack: List[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _OPENERS:
            stack.append(char)
        elif char in _CLOSERS and stack and stack[-1] == _CLOSERS[char]:
            stack.pop()
    return stack, in_string


def _close(text: str) -> str:
    """补全未闭合的字符串和括号"""
    stack, in_string = _scan(text)
    closed = text + '"' if in_string else text
    stripped = closed.rstrip()
    if stripped.endswith(","):
        closed = stripped[:-1]
    elif stripped.endswith(":"):
        closed = stripped + " null"
    return closed + "".join(_OPENERS[opener] for opener in reversed(stack))


def strip_code_fences(text: str) -> Optional[str]:
    """移除Markdown代码块标记和首尾空白"""
    match = _FENCED_BLOCK.search(text)
    if match:
        return match.group(1).strip() or None
    cleaned = _TRAILING_FENCE.sub("", _LEADING_FENCE.sub("", text.strip())).strip()
    return cleaned or None


def extract_bracket_block(text: str) -> Optional[str]:
    """贪婪匹配第一个 {...} 或 [...] 块"""
    match = _BRACKET_BLOCK.search(text)
    return match.group(0) if match else None


def trim_to_outer_brackets(text: str) -> Optional[str]:
    """裁掉第一个开括号之前和最后一个对应闭括号之后的内容"""
    starts = [i for i in (text.find("{"), text.find("[")) if i >= 0]
    if not starts:
        return None
    tail = text[min(starts):]
    stack, in_string = _scan(tail)
    if stack or in_string:
        # 括号未闭合，多半是被截断了，保留开头之后的全部内容
        return tail
    end = tail.rfind(_OPENERS[tail[0]])
    return tail[:end + 1] if end > 0 else tail


def remove_chatty_wrappers(text: str) -> Optional[str]:
    """移除“以下是…”“希望对您有帮助”之类的前后缀说明，并合并空行"""
    cleaned = text
    previous = None
    while previous != cleaned:
        previous = cleaned
        cleaned = _LEADING_CHATTER.sub("", cleaned)
        cleaned = _TRAILING_CHATTER.sub("", cleaned)
    cleaned = _BLANK_LINES.sub("\n", cleaned).strip()
    return cleaned or None


def close_unbalanced_brackets(text: str) -> Optional[str]:
    """为被截断的输出补全缺失的闭括号"""
    stack, in_string = _scan(text)
    if not stack and not in_string:
        return None
    return _close(text)


def cut_truncated_tail(text: str) -> Optional[str]:
    """在后半段最后一个完整的 "key": "value", 边界处截断，再补全括号"""
    stripped = text.rstrip()
    if not stripped or stripped[-1] in "}]":
        return None
    boundary = None
    for match in _VALUE_BOUNDARY.finditer(stripped):
        boundary = match
    if boundary is None or boundary.start() <= len(stripped) / 2:
        return None
    return _close(stripped[:boundary.start() + 1])


def strip_trailing_commas(text: str) -> Optional[str]:
    """移除闭括号前多余的逗号"""
    cleaned = _TRAILING_COMMA.sub(r"\1", text)
    return cleaned if cleaned != text else None


def _extract_value(text: str, start: int) -> Optional[str]:
    """从start处的开括号开始截取一个完整（或补全后）的JSON值"""
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _OPENERS:
            depth += 1
        elif char in _CLOSERS:
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    return _close(text[start:])


def assemble_known_keys(text: str) -> Optional[str]:
    """最后手段：逐个提取已知顶层字段，拼装最小JSON对象"""
    assembled = {}
    for key in KNOWN_TOP_LEVEL_KEYS:
        match = re.search(r'"?%s"?\s*:\s*([{\[])' % key, text)
        if not match:
            continue
        fragment = _extract_value(text, match.start(1))
        value = _try_parse(fragment) if fragment else None
        if value is not None:
            assembled[key] = value
    if not assembled:
        return None
    return json.dumps(assembled, ensure_ascii=False)


STRATEGY_PIPELINES: Sequence[Tuple[str, Sequence[Strategy]]] = (
    ("raw", ()),
    ("strip_code_fences", (strip_code_fences,)),
    ("extract_bracket_block", (strip_code_fences, extract_bracket_block)),
    ("trim_to_outer_brackets", (strip_code_fences, trim_to_outer_brackets)),
    ("remove_chatty_wrappers", (strip_code_fences, remove_chatty_wrappers, trim_to_outer_brackets)),
    ("strip_trailing_commas", (strip_code_fences, trim_to_outer_brackets, strip_trailing_commas)),
    ("close_unbalanced_brackets", (strip_code_fences, trim_to_outer_brackets, close_unbalanced_brackets)),
    ("close_after_comma_fix", (strip_code_fences, trim_to_outer_brackets, strip_trailing_commas,
                               close_unbalanced_brackets, strip_trailing_commas)),
    ("cut_truncated_tail", (strip_code_fences, trim_to_outer_brackets, cut_truncated_tail)),
    ("cut_after_comma_fix", (strip_code_fences, trim_to_outer_brackets, strip_trailing_commas,
                             cut_truncated_tail, strip_trailing_commas)),
    ("assemble_known_keys", (assemble_known_keys,)),
)


def _try_parse(candidate: str) -> Optional[JSONValue]:
    try:
        value = json.loads(candidate)
    except (ValueError, TypeError, RecursionError):
        return None
    return value if isinstance(value, (dict, list)) else None


def run_strategies(
    text: str,
    pipelines: Sequence[Tuple[str, Sequence[Strategy]]] = STRATEGY_PIPELINES
) -> Optional[JSONValue]:
    """
    依次执行策略流水线，返回第一个解析成功的JSON对象或数组

    流水线中返回None的步骤视为不适用，沿用上一步的文本
    """
    tried = set()
    for name, steps in pipelines:
        candidate = text
        for step in steps:
            try:
                result = step(candidate)
            except Exception as e:
                logger.debug("JSON修复策略执行异常", strategy=name, step=step.__name__, error=str(e))
                result = None
            if result is not None:
                candidate = result

        if candidate in tried:
            continue
        tried.add(candidate)

        parsed = _try_parse(candidate)
        if parsed is not None:
            if name != "raw":
                logger.debug("JSON修复成功", strategy=name)
            return parsed
    return None


def parse_json_from_text(raw: Any) -> Optional[JSONValue]:
    """
    从LLM返回的文本中恢复JSON

    Args:
        raw: LLM返回的原始文本

    Returns:
        解析后的字典或列表；无法恢复时返回None
    """
    if not isinstance(raw, str) or not raw.strip():
        return None

    result = run_strategies(raw)
    if result is None:
        logger.warning("JSON解析失败，所有修复策略均未成功", response=raw[:200])
    return result
