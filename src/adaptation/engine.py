# 適応ルール評価エンジン
"""
AdaptationEngine: 優先度順にルールを評価し、発火したルールのアクションを実行する

評価パスの流れ:
1. create_context() で状態・メトリクス・履歴のディープコピーを取る
2. 有効なルールを (priority, 登録順) で走査し、条件をスナップショットに対して評価
3. 条件が真ならアクションを ActionExecutor 経由で順に実行。各アクションは
   先行ルールのマージ後の状態に、同じルール内の先行アクションの結果を重ねて参照する
4. 全アクションが成功したルールの ActionResult だけを状態・メトリクスにマージし、
   last_triggered / trigger_count を更新

条件・アクションの例外はルール単位で捕捉してログに残し、評価は継続する。
評価した全ルールが失敗した場合のみ RuleEvaluationError を送出する。

状態・メトリクスの書き込みは threading.Lock、evaluate_event / apply_rules の
評価とマージは asyncio.Lock で直列化する。
"""

import asyncio
import copy
import logging
import time
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional

from src.adaptation.actions import deep_merge
from src.adaptation.executor import ActionExecutor
from src.adaptation.history import HistoryStore
from src.adaptation.patterns import PatternDetector
from src.adaptation.registry import RuleRegistry
from src.config.experimentation_config import ExperimentationConfig
from src.models.adaptation import (
    ActionResult,
    AdaptationOutcome,
    AdaptationRule,
    EvaluationReport,
    Pattern,
    RuleContext,
    RuleOutcome,
)
from src.models.errors import ConfigurationError, NotFoundError, RuleEvaluationError
from src.monitoring.engine_metrics import AdaptationMetrics, AdaptationMetricsSnapshot


logger = logging.getLogger(__name__)

PERIODIC_CHECK_EVENT = "periodic_check"
ADAPTATION_REQUEST_EVENT = "adaptation_request"


class AdaptationEngine:
    """適応ルール評価エンジン

    使用例:
        engine = AdaptationEngine()
        engine.add_rule(rule)
        engine.update_metrics({"error_rate": 0.2})
        report = await engine.evaluate_event({"type": "search_failed"})

        await engine.start(interval=5.0)  # 定期評価
        ...
        await engine.stop()

    Attributes:
        registry: ルール登録簿
        history: メトリクス・イベント・パターンの有界履歴
        detector: パターン検出（history を共有）
        executor: アクション実行プール
        metrics: 評価メトリクス
    """

    def __init__(
        self,
        registry: Optional[RuleRegistry] = None,
        history: Optional[HistoryStore] = None,
        detector: Optional[PatternDetector] = None,
        config: Optional[ExperimentationConfig] = None,
        executor: Optional[ActionExecutor] = None,
        metrics: Optional[AdaptationMetrics] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config or ExperimentationConfig()
        self.registry = registry or RuleRegistry()
        self.history = history or HistoryStore(config=self.config)
        self.detector = detector or PatternDetector(self.history, self.config, clock)
        self.executor = executor or ActionExecutor(self.config.max_concurrent_actions)
        self.metrics = metrics or AdaptationMetrics()
        self._clock = clock

        self._state: Dict[str, Any] = {}
        self._metrics: Dict[str, float] = {}
        self._lock = Lock()

        # asyncio のオブジェクトはイベントループ上で遅延生成する
        self._evaluation_lock: Optional[asyncio.Lock] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # ルール管理
    # ------------------------------------------------------------------

    def add_rule(self, rule: AdaptationRule) -> None:
        self.registry.register(rule)

    def remove_rule(self, name: str) -> None:
        self.registry.unregister(name)

    # ------------------------------------------------------------------
    # 状態・メトリクス
    # ------------------------------------------------------------------

    def update_metrics(self, new_metrics: Dict[str, float]) -> None:
        """メトリクスを浅くマージし、各値を履歴に追加"""
        # 1つでも数値に変換できなければ何もマージしない
        converted = {key: float(value) for key, value in new_metrics.items()}
        timestamp = self._clock()
        with self._lock:
            for key, value in converted.items():
                self._metrics[key] = value
                self.history.append_metric(key, value, timestamp)
        logger.debug(f"メトリクスを更新: keys={sorted(new_metrics)}")

    def update_state(self, new_state: Dict[str, Any]) -> None:
        """状態を浅くマージ"""
        with self._lock:
            self._state.update(copy.deepcopy(new_state))
        logger.debug(f"状態を更新: keys={sorted(new_state)}")

    def get_state(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._state)

    def get_metrics(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._metrics)

    def create_context(self, event: Optional[Dict[str, Any]] = None) -> RuleContext:
        """現在の状態・メトリクス・履歴からスナップショットを作成"""
        with self._lock:
            state = copy.deepcopy(self._state)
            metrics = dict(self._metrics)
        metric_history, event_history, pattern_history = self.history.snapshot()
        return RuleContext.create(
            event=event,
            state=state,
            metrics=metrics,
            metric_history=metric_history,
            event_history=event_history,
            pattern_history=pattern_history,
            timestamp=self._clock(),
        )

    def metrics_snapshot(self) -> AdaptationMetricsSnapshot:
        return self.metrics.snapshot()

    # ------------------------------------------------------------------
    # 評価
    # ------------------------------------------------------------------

    async def evaluate_triggered(
        self,
        context: RuleContext,
        rules: Optional[Iterable[AdaptationRule]] = None,
    ) -> EvaluationReport:
        """コンテキストに対して有効なルールを評価

        Args:
            context: 評価スナップショット
            rules: 評価対象（省略時はレジストリの有効ルール全て）

        Returns:
            評価パスの EvaluationReport

        Raises:
            RuleEvaluationError: 評価した全ルールが失敗した場合
        """
        started = time.perf_counter()
        report = EvaluationReport(timestamp=context.timestamp)
        candidates = list(rules) if rules is not None else self.registry.enabled_rules()
        # 先行ルールの結果を積み上げた状態・メトリクス。アクションはこれを参照し、
        # 条件は常にパス開始時のスナップショットで評価する
        pass_state = copy.deepcopy(dict(context.state))
        pass_metrics = dict(context.metrics)

        for rule in candidates:
            if not rule.enabled:
                continue
            outcome = RuleOutcome(rule_id=rule.id, rule_name=rule.name)
            report.outcomes.append(outcome)

            try:
                triggered = bool(rule.condition.evaluate(context))
            except Exception as e:
                logger.exception(f"条件の評価に失敗: rule={rule.name}")
                outcome.succeeded = False
                outcome.error = f"{type(e).__name__}: {e}"
                continue

            if not triggered:
                continue
            outcome.triggered = True

            # 作業用コピー（成功時のみパスの状態に反映する）
            working_state = copy.deepcopy(pass_state)
            working_metrics = dict(pass_metrics)

            results: List[ActionResult] = []
            try:
                for action in rule.actions:
                    action_context = context.with_values(working_state, working_metrics)
                    result = await self.executor.run(action.execute, action_context)
                    deep_merge(working_state, copy.deepcopy(result.state_updates))
                    for key, value in result.metric_updates.items():
                        working_metrics[key] = float(value)
                    results.append(result)
            except Exception as e:
                logger.exception(f"アクションの実行に失敗: rule={rule.name}")
                outcome.succeeded = False
                outcome.error = f"{type(e).__name__}: {e}"
                continue

            pass_state, pass_metrics = working_state, working_metrics
            self._apply_results(rule, results, context.timestamp)
            outcome.actions_taken = [r.description for r in results]
            logger.info(f"ルールが発火: name={rule.name}, actions={len(results)}")

        report.duration_seconds = time.perf_counter() - started
        self.metrics.record_pass(
            evaluated=report.evaluated,
            triggered=report.triggered,
            failed=report.failed,
            duration=report.duration_seconds,
            timestamp=context.timestamp,
        )

        if report.all_failed:
            raise RuleEvaluationError(
                f"All {report.evaluated} evaluated rules failed", report=report
            )
        return report

    async def evaluate_event(self, event: Dict[str, Any]) -> EvaluationReport:
        """イベントを履歴に追加し、新しいスナップショットで評価"""
        self.history.append_event(event)
        async with self._get_evaluation_lock():
            context = self.create_context(event)
            return await self.evaluate_triggered(context)

    async def apply_rules(
        self,
        rule_ids: Iterable[str],
        context: Dict[str, Any],
        metrics: Optional[Dict[str, float]] = None,
    ) -> AdaptationOutcome:
        """指定したルールだけを adaptation_request イベントとして評価

        Args:
            rule_ids: 評価するルールID
            context: 状態に浅くマージする値
            metrics: メトリクスにマージする値

        Raises:
            NotFoundError: 有効なルールが1件も一致しない場合
        """
        requested = list(rule_ids)
        known_ids = {rule.id for rule in self.registry.rules()}
        for rule_id in requested:
            if rule_id not in known_ids:
                logger.warning(f"未知のルールIDをスキップ: {rule_id}")

        wanted = set(requested)
        selected = [rule for rule in self.registry.enabled_rules() if rule.id in wanted]
        if not selected:
            raise NotFoundError(f"No enabled rules found for ids {requested}")

        if metrics:
            self.update_metrics(metrics)
        self.update_state(context)

        event = {
            "type": ADAPTATION_REQUEST_EVENT,
            "rule_ids": requested,
            "context": copy.deepcopy(context),
        }
        self.history.append_event(event)
        async with self._get_evaluation_lock():
            snapshot = self.create_context(event)
            report = await self.evaluate_triggered(snapshot, selected)

        return AdaptationOutcome(
            applied_rule_count=report.triggered,
            evaluated_rule_count=report.evaluated,
            report=report,
        )

    # ------------------------------------------------------------------
    # パターン検出
    # ------------------------------------------------------------------

    def detect_patterns(self, events: Optional[List[Dict[str, Any]]] = None) -> List[Pattern]:
        """イベント群からパターンを検出（省略時はイベント履歴）"""
        if events is None:
            events = self.history.events()
        return self.detector.detect(events)

    def detect_metric_trends(self) -> List[Pattern]:
        return self.detector.detect_metric_trends(self.history.metric_history())

    # ------------------------------------------------------------------
    # 定期評価ループ
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, interval: Optional[float] = None) -> None:
        """定期評価ループを開始（実行中なら何もしない）"""
        if self.is_running:
            logger.debug("定期評価ループは既に実行中")
            return

        interval = interval if interval is not None else self.config.evaluation_interval_seconds
        if interval <= 0:
            raise ConfigurationError(f"interval must be positive, got {interval}")

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(interval, self._stop_event))
        logger.info(f"定期評価ループを開始: interval={interval}s")

    async def stop(self) -> None:
        """定期評価ループを停止し、ループの終了を待つ（冪等）"""
        task = self._task
        if task is None:
            return
        if self._stop_event is not None:
            self._stop_event.set()
        try:
            await task
        finally:
            if self._task is task:
                self._task = None
                logger.info("定期評価ループを停止")

    async def _run_loop(self, interval: float, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.evaluate_event({"type": PERIODIC_CHECK_EVENT})
            except RuleEvaluationError as e:
                logger.error(f"定期評価で全ルールが失敗: {e}")
            except Exception:
                logger.exception("定期評価でエラーが発生")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # 内部処理
    # ------------------------------------------------------------------

    def _get_evaluation_lock(self) -> asyncio.Lock:
        if self._evaluation_lock is None:
            self._evaluation_lock = asyncio.Lock()
        return self._evaluation_lock

    def _apply_results(
        self,
        rule: AdaptationRule,
        results: List[ActionResult],
        timestamp: datetime,
    ) -> None:
        """成功したルールの結果を状態・メトリクスにマージ"""
        with self._lock:
            for result in results:
                deep_merge(self._state, copy.deepcopy(result.state_updates))
                for key, value in result.metric_updates.items():
                    self._metrics[key] = float(value)
                    self.history.append_metric(key, value, timestamp)
            rule.last_triggered = timestamp
            rule.trigger_count += 1
