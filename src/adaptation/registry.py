# ルールレジストリ
"""
RuleRegistry: 名前をキーにした適応ルールの登録簿

評価順序は (priority 昇順, 登録順)。同名ルールの再登録は置き換えとなり、
新しい登録順序番号が振られる（同優先度の中では末尾に回る）。
"""

import itertools
import logging
from threading import Lock
from typing import Dict, List, Optional, Tuple

from src.models.adaptation import AdaptationRule


logger = logging.getLogger(__name__)


class RuleRegistry:
    """適応ルールの登録簿（スレッドセーフ）

    使用例:
        registry = RuleRegistry()
        registry.register(rule)
        for rule in registry.enabled_rules():
            ...
    """

    def __init__(self):
        self._rules: Dict[str, Tuple[int, AdaptationRule]] = {}
        self._sequence = itertools.count()
        self._lock = Lock()

    def register(self, rule: AdaptationRule) -> None:
        """ルールを登録（同名ルールは置き換え）"""
        with self._lock:
            replaced = rule.name in self._rules
            self._rules[rule.name] = (next(self._sequence), rule)
        if replaced:
            logger.info(f"ルールを置き換え: name={rule.name}, id={rule.id}")
        else:
            logger.info(f"ルールを登録: name={rule.name}, id={rule.id}")

    def unregister(self, name: str) -> None:
        """ルールを削除（存在しなければ何もしない）"""
        with self._lock:
            removed = self._rules.pop(name, None)
        if removed is not None:
            logger.info(f"ルールを削除: name={name}")

    def get(self, name: str) -> Optional[AdaptationRule]:
        with self._lock:
            entry = self._rules.get(name)
        return entry[1] if entry else None

    def get_by_id(self, rule_id: str) -> Optional[AdaptationRule]:
        with self._lock:
            for _, rule in self._rules.values():
                if rule.id == rule_id:
                    return rule
        return None

    def rules(self) -> List[AdaptationRule]:
        """評価順（priority 昇順、登録順）のルール一覧"""
        with self._lock:
            entries = list(self._rules.values())
        entries.sort(key=lambda entry: (int(entry[1].priority), entry[0]))
        return [rule for _, rule in entries]

    def enabled_rules(self) -> List[AdaptationRule]:
        return [rule for rule in self.rules() if rule.enabled]

    def __len__(self) -> int:
        with self._lock:
            return len(self._rules)
