"""
推荐流程运行状态管理
- CancellationToken：协作式取消标记，在阶段之间检查
- PipelineRunState：单次运行的内存状态
- RunSessionManager：同一会话同时只保留一个运行，新运行会取消上一个运行及其尚未启动的延迟任务
"""
from typing import Any, Awaitable, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import asyncio
import uuid

import structlog

from weight_advisor.core.config import settings

logger = structlog.get_logger()


class CancellationToken:
    """取消标记（只会从未取消变为已取消）"""

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "用户取消") -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason


class PipelineStatus(str, Enum):
    """推荐流程状态"""
    IDLE = "idle"
    NEEDS_RESOLVED = "needs_resolved"
    RULE_MATCHED = "rule_matched"
    SUPPLEMENTED = "supplemented"
    DETAILS_READY = "details_ready"
    ANALYZED = "analyzed"
    FINALIZED = "finalized"
    FAILED_WITH_FALLBACK = "failed_with_fallback"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {PipelineStatus.FINALIZED, PipelineStatus.FAILED_WITH_FALLBACK, PipelineStatus.CANCELLED}


@dataclass
class PipelineRunState:
    """单次推荐流程的运行状态，只由编排器写入"""
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    token: CancellationToken = field(default_factory=CancellationToken)
    status: PipelineStatus = PipelineStatus.IDLE
    current_stage: Optional[str] = None
    history: List[PipelineStatus] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    user_needs: Optional[Dict[str, Any]] = None
    data_features: Optional[Dict[str, Any]] = None
    rule_matching: Any = None
    supplement: Any = None
    method_details: Dict[str, Any] = field(default_factory=dict)
    semantic_results: Dict[str, Any] = field(default_factory=dict)
    personalized: Dict[str, Any] = field(default_factory=dict)
    bundle: Any = None
    kickoff_handle: Optional[asyncio.TimerHandle] = None
    task: Optional[asyncio.Task] = None
    result: Optional[asyncio.Future] = None

    def transition(self, status: PipelineStatus) -> None:
        """切换状态，终止状态不再变化"""
        if self.status in TERMINAL_STATUSES:
            return
        self.history.append(self.status)
        self.status = status
        logger.debug("推荐流程状态变更", run_id=self.run_id, status=status.value)

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATUSES


Runner = Callable[[PipelineRunState], Awaitable[Any]]


class RunSessionManager:
    """单会话推荐流程管理"""

    def __init__(self, kickoff_delay_ms: Optional[int] = None):
        """
        Args:
            kickoff_delay_ms: 启动延迟（毫秒），为None时从配置读取
        """
        delay = settings.RUN_KICKOFF_DELAY_MS if kickoff_delay_ms is None else kickoff_delay_ms
        self.kickoff_delay = max(0, delay) / 1000
        self.current: Optional[PipelineRunState] = None

    def start(self, runner: Runner) -> PipelineRunState:
        """
        延迟启动新运行，先取消当前运行

        必须在事件循环中调用

        Args:
            runner: 接收运行状态的协程函数

        Returns:
            新运行的状态，result为运行结果的Future（被取消时结果为None）
        """
        loop = asyncio.get_running_loop()
        self.cancel_current("新的推荐流程已启动")

        state = PipelineRunState()
        state.result = loop.create_future()

        def launch() -> None:
            state.kickoff_handle = None
            if state.token.cancelled:
                state.transition(PipelineStatus.CANCELLED)
                if not state.result.done():
                    state.result.set_result(None)
                return
            state.task = loop.create_task(runner(state))
            state.task.add_done_callback(lambda task: _settle(state.result, task))

        state.kickoff_handle = loop.call_later(self.kickoff_delay, launch)
        self.current = state
        logger.info("推荐流程已排队", run_id=state.run_id, delay_ms=int(self.kickoff_delay * 1000))
        return state

    @property
    def idle(self) -> bool:
        """没有排队或执行中的运行"""
        state = self.current
        return state is None or state.result is None or state.result.done()

    async def run(self, runner: Runner) -> Any:
        """启动新运行并等待结果"""
        state = self.start(runner)
        return await state.result

    def cancel_current(self, reason: str = "用户取消") -> None:
        """取消当前运行：设置取消标记，清除尚未触发的延迟启动；已发出的LLM请求不会中断"""
        state = self.current
        if state is None:
            return

        state.token.cancel(reason)
        if state.kickoff_handle is not None:
            state.kickoff_handle.cancel()
            state.kickoff_handle = None
            state.transition(PipelineStatus.CANCELLED)
            if state.result is not None and not state.result.done():
                state.result.set_result(None)
        logger.info("推荐流程已取消", run_id=state.run_id, reason=reason)

    def reset(self) -> None:
        """取消当前运行并清空状态"""
        self.cancel_current("重置")
        self.current = None


def _settle(future: Optional[asyncio.Future], task: asyncio.Task) -> None:
    if future is None or future.done():
        return
    if task.cancelled():
        future.set_result(None)
    elif task.exception() is not None:
        future.set_exception(task.exception())
    else:
        future.set_result(task.result())
