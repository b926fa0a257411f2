"""
解析模块：把模型的自由文本输出转换为合法的 Action。

分两层：
1. 严格解析：去掉代码块围栏后依次尝试若干 JSON 候选片段；
2. 兜底解析：JSON 损坏时用正则逐字段提取，并以 WARNING 记录。

两层结果通过 AIResponse.recovered 区分。
"""

import json
import logging
import math
import re
from typing import Any, Dict, List, Optional, Tuple

from .errors import ActionFormatError, ResponseParseError
from .models import ACTION_TYPES, REQUIRED_FIELDS, AIResponse, Action

logger = logging.getLogger(__name__)

ACTION_SYNONYMS = {kind: kind for kind in ACTION_TYPES}
ACTION_SYNONYMS.update({
    "long_click": "long_press",
    "hold_click": "long_press",
    "click_and_hold": "long_press",
    "press_and_hold": "long_press",
    "press_enter": "enter",
    "key_enter": "enter",
    "submit": "enter",
    "send": "enter",
    "confirm": "enter",
    "command": "shell",
    "cmd": "shell",
    "run": "shell",
    "execute": "shell",
})

_NUMBER = r"(-?\d+(?:\.\d+)?)"
_FIELD_PATTERNS = {
    "x": re.compile(r'"x"\s*:\s*' + _NUMBER, re.I),
    "y": re.compile(r'"y"\s*:\s*' + _NUMBER, re.I),
    "end_x": re.compile(r'"end_x"\s*:\s*' + _NUMBER, re.I),
    "end_y": re.compile(r'"end_y"\s*:\s*' + _NUMBER, re.I),
    "duration": re.compile(r'"duration"\s*:\s*(\d+)', re.I),
    "hold_seconds": re.compile(r'"hold_seconds"\s*:\s*' + _NUMBER, re.I),
    "scroll_amount": re.compile(r'"scroll_amount"\s*:\s*(-?\d+)', re.I),
}
_ACTION_PATTERN = re.compile(r'"action"\s*:\s*"([a-z_]+)"', re.I)
_THOUGHT_PATTERN = re.compile(r'"thought"\s*:\s*"([^"]*)"', re.I)
_TEXT_PATTERN = re.compile(r'"text"\s*:\s*"([^"]*)"', re.I)

_FENCE_OPEN_JSON = re.compile(r"^```json\s*", re.I)
_FENCE_OPEN = re.compile(r"^```\s*")
_FENCE_CLOSE = re.compile(r"\s*```$")


def strip_code_fence(text: str) -> str:
    text = _FENCE_OPEN_JSON.sub("", text.strip())
    text = _FENCE_OPEN.sub("", text)
    return _FENCE_CLOSE.sub("", text).strip()


def extract_first_balanced_json_object(text: str) -> Optional[str]:
    """
    从第一个 '{' 开始按括号深度扫描，返回第一个完整闭合的对象片段。

    字符串字面量内的括号与转义字符不计入深度，
    因此能处理合法 JSON 之后还跟着解释文字的情况。
    """
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def recover_action_from_broken_text(text: str) -> Optional[Dict[str, Any]]:
    """JSON 损坏时逐字段提取；至少要能识别出 action"""
    action_match = _ACTION_PATTERN.search(text)
    if not action_match:
        return None

    action: Dict[str, Any] = {"action": action_match.group(1).lower()}
    for name, pattern in _FIELD_PATTERNS.items():
        match = pattern.search(text)
        if match:
            action[name] = float(match.group(1))
    text_match = _TEXT_PATTERN.search(text)
    if text_match:
        action["text"] = text_match.group(1)

    thought_match = _THOUGHT_PATTERN.search(text)
    return {
        "thought": thought_match.group(1) if thought_match else "",
        "action": action,
    }


def parse_response_json(content: str) -> Tuple[Dict[str, Any], bool]:
    """
    解析模型输出，返回 (数据, 是否走了兜底解析)。
    """
    trimmed = content.strip()
    without_fence = strip_code_fence(trimmed)

    candidates = [without_fence]
    first = without_fence.find("{")
    last = without_fence.rfind("}")
    if first != -1 and last > first:
        candidates.append(without_fence[first:last + 1])
    balanced = extract_first_balanced_json_object(without_fence)
    if balanced:
        candidates.append(balanced)

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(data, dict):
            return data, False

    recovered = recover_action_from_broken_text(trimmed)
    if recovered is not None:
        logger.warning("AI JSON 损坏，已使用兜底解析动作: %s", recovered["action"])
        return recovered, True

    raise ResponseParseError(f"Invalid JSON response: {trimmed[:200]}")


def normalize_action_type(value: Any) -> str:
    raw = str(value or "").strip().lower()
    return ACTION_SYNONYMS.get(raw, "wait")


def _to_number(value: Any) -> float:
    """转成数字；整数值保持 int 以便签名与日志可读，无法转换时返回 NaN"""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        number = value
    else:
        try:
            number = float(str(value).strip())
        except ValueError:
            return math.nan
    if isinstance(number, float) and number.is_integer():
        return int(number)
    return number


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("", "false", "0", "no", "off")
    return bool(value)


def _split_keys(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(k) for k in value]
    text = str(value)
    if "+" in text and text.strip() != "+":
        return [k.strip() for k in text.split("+") if k.strip()]
    return [text]


def _unpack_point(raw: Dict[str, Any], fixed: Action, x_name: str, y_name: str):
    value = raw.get(x_name)
    if isinstance(value, (list, tuple)) and len(value) >= 2:
        setattr(fixed, x_name, _to_number(value[0]))
        setattr(fixed, y_name, _to_number(value[1]))
        logger.info("修正坐标格式: %s=%s -> %s=%s, %s=%s",
                    x_name, value, x_name, getattr(fixed, x_name), y_name, getattr(fixed, y_name))
        return
    if value is not None:
        setattr(fixed, x_name, _to_number(value))
    if raw.get(y_name) is not None:
        setattr(fixed, y_name, _to_number(raw[y_name]))


def fix_action_format(raw: Any) -> Action:
    """
    归一化动作：同义词映射、坐标数组展开、数值与布尔转换。
    """
    if not isinstance(raw, dict):
        return Action("wait", duration=1000)

    kind = normalize_action_type(raw.get("action"))

    if kind == "shell" and not str(raw.get("command") or "").strip():
        # 兼容行为：缺少命令的 shell 降级为等待，但单独记录，便于与正常 wait 区分
        logger.warning("shell 动作缺少 command 字段，已降级为 wait 1000ms: %s", raw)
        return Action("wait", duration=1000)

    fixed = Action(kind)
    _unpack_point(raw, fixed, "x", "y")
    _unpack_point(raw, fixed, "end_x", "end_y")

    if raw.get("text") is not None:
        fixed.text = str(raw["text"])
    if raw.get("keys") is not None:
        fixed.keys = _split_keys(raw["keys"])
    for name in ("duration", "hold_seconds", "scroll_amount", "timeout"):
        if raw.get(name) is not None:
            setattr(fixed, name, _to_number(raw[name]))

    if raw.get("command") is not None:
        fixed.command = str(raw["command"])
    if raw.get("shell") is not None:
        fixed.shell = str(raw["shell"])
    if raw.get("work_dir") is not None:
        fixed.work_dir = str(raw["work_dir"])
    if raw.get("capture_output") is not None:
        fixed.capture_output = _to_bool(raw["capture_output"])
    return fixed


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _field_ok(action: Action, name: str) -> bool:
    value = getattr(action, name)
    if name == "text":
        return isinstance(value, str)
    if name == "keys":
        return bool(value)
    if name == "command":
        return isinstance(value, str) and bool(value.strip())
    return _is_number(value)


def validate_action(action: Action):
    """校验必填字段，失败时抛出 ActionFormatError 并指明字段"""
    required = REQUIRED_FIELDS.get(action.action)
    if required is None:
        raise ActionFormatError("action", f"ACTION_FORMAT_ERROR: 未知 action {action.action}")
    for name in required:
        if not _field_ok(action, name):
            raise ActionFormatError(name)


def parse_ai_response(content: str) -> AIResponse:
    """把一次模型输出转换为已校验的 AIResponse"""
    data, recovered = parse_response_json(content)

    raw_action = data.get("action")
    if isinstance(raw_action, str):
        # 扁平格式：{"thought": ..., "action": "click", "x": ..., "y": ...}
        raw_action = {k: v for k, v in data.items() if k != "thought"}

    action = fix_action_format(raw_action)
    logger.info("解析后动作: %s", json.dumps(action.to_dict(), ensure_ascii=False))
    validate_action(action)

    thought = data.get("thought")
    return AIResponse(thought=str(thought) if thought else "", action=action, recovered=recovered)
