"""模型池：把服务商配置展开为 (provider, model, key) 条目，并按目标轮询"""

import logging
from typing import Dict, List

from .config import ApiConfig
from .errors import NoModelAvailableError
from .models import ModelPoolEntry

logger = logging.getLogger(__name__)

ALL_TARGET = "all"


def _clean(value) -> str:
    return str(value or "").strip()


def build_model_pool(api: ApiConfig) -> List[ModelPoolEntry]:
    """
    展开服务商列表：每个启用的 provider × 启用的 model × key 生成一个条目。

    providers 中没有任何可用条目时，回退到旧式的单服务商配置。
    构造过程不访问网络。
    """
    entries: List[ModelPoolEntry] = []
    seen = set()

    for provider in api.providers or []:
        if not provider.enabled:
            continue
        base_url = _clean(provider.base_url)
        keys = [_clean(k) for k in provider.api_keys or [] if _clean(k)]
        models = [_clean(m.id) for m in provider.models or [] if m.enabled and _clean(m.id)]
        if not base_url or not keys or not models:
            continue

        provider_id = _clean(provider.id) or "provider"
        for model in models:
            for key in keys:
                entry_id = f"{provider_id}::{model}::{key}"
                if entry_id in seen:
                    continue
                seen.add(entry_id)
                entries.append(ModelPoolEntry(
                    entry_id=entry_id,
                    provider_id=provider_id,
                    provider_name=str(provider.name or provider.id or "Provider"),
                    base_url=base_url,
                    model=model,
                    api_key=key,
                ))

    if entries:
        return entries

    raw_keys = api.api_key if isinstance(api.api_key, (list, tuple)) else [api.api_key]
    model = _clean(api.model)
    for key in (_clean(k) for k in raw_keys):
        if not key:
            continue
        entry_id = f"legacy::{model}::{key}"
        if entry_id in seen:
            continue
        seen.add(entry_id)
        entries.append(ModelPoolEntry(
            entry_id=entry_id,
            provider_id="legacy",
            provider_name=str(api.provider or "OpenAI Compatible"),
            base_url=_clean(api.base_url),
            model=model,
            api_key=key,
        ))
    return entries


def mask_key(key: str) -> str:
    return f"{key[:8]}****" if len(key) > 8 else key


class ModelPool:
    """模型池，每个目标字符串拥有独立的轮询游标"""

    def __init__(self, entries: List[ModelPoolEntry]):
        self.entries = list(entries)
        self._cursor_by_target: Dict[str, int] = {}

    @classmethod
    def from_config(cls, api: ApiConfig) -> "ModelPool":
        return cls(build_model_pool(api))

    def __len__(self) -> int:
        return len(self.entries)

    def for_target(self, target: str = ALL_TARGET) -> List[ModelPoolEntry]:
        """target 为 "all" 或 "providerId::modelId" """
        target = target or ALL_TARGET
        if target == ALL_TARGET:
            return self.entries
        return [e for e in self.entries if e.target == target]

    def next_entry(self, target: str = ALL_TARGET) -> ModelPoolEntry:
        target = target or ALL_TARGET
        pool = self.for_target(target)
        if not pool:
            raise NoModelAvailableError(target)
        cursor = self._cursor_by_target.get(target, 0)
        entry = pool[cursor % len(pool)]
        self._cursor_by_target[target] = (cursor + 1) % len(pool)
        return entry

    def targets(self) -> List[str]:
        """可供前端选择的目标列表"""
        result = [ALL_TARGET]
        for entry in self.entries:
            if entry.target not in result:
                result.append(entry.target)
        return result

    def status_report(self) -> str:
        lines = [f"模型池条目: {len(self.entries)}"]
        for index, entry in enumerate(self.entries, start=1):
            lines.append(f"  [{index}] {entry.provider_name}/{entry.model} @ {mask_key(entry.api_key)}")
        return "\n".join(lines)
