"""
批处理/并行调度
- 将待处理项分批，按API配置轮询并发执行
- 等待全部完成，收集成功结果，单个批次失败不影响其他批次
- 可用配置少于2个或全部批次失败时，退回单配置顺序执行
"""
from typing import Any, Awaitable, Callable, Dict, Generic, Iterable, List, TypeVar
from dataclasses import dataclass, field
import asyncio
import math
import time

import structlog

from weight_advisor.schemas.recommendation import BatchProcessingDetails
from weight_advisor.services.llm_transport import EndpointConfig
from weight_advisor.utils.pipeline_exception import ConfigurationError

logger = structlog.get_logger()

T = TypeVar("T")
R = TypeVar("R")

MAX_PARALLEL_CONFIGS = 3


@dataclass
class SettledResults(Generic[T]):
    """并发任务的结算结果"""
    succeeded: List[T] = field(default_factory=list)
    failed: List[BaseException] = field(default_factory=list)


async def settle_all(awaitables: Iterable[Awaitable[T]]) -> SettledResults[T]:
    """
    等待全部任务完成，分别收集成功结果和异常

    单个任务失败不会抛出；任务被取消时向上抛出CancelledError
    """
    outcomes = await asyncio.gather(*awaitables, return_exceptions=True)
    settled: SettledResults[T] = SettledResults()
    for outcome in outcomes:
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            settled.failed.append(outcome)
        else:
            settled.succeeded.append(outcome)
    return settled


def partition(items: List[T], batch_count: int) -> List[List[T]]:
    """按 ⌈N/K⌉ 大小连续切分为最多batch_count批"""
    if not items:
        return []
    batch_count = max(1, min(batch_count, len(items)))
    size = math.ceil(len(items) / batch_count)
    return [items[i:i + size] for i in range(0, len(items), size)]


def _raise_configuration_error(failures: Iterable[BaseException]) -> None:
    # 配置错误与批次无关，直接上抛
    for failure in failures:
        if isinstance(failure, ConfigurationError):
            raise failure


@dataclass
class BatchRunReport(Generic[R]):
    """批处理结果与元数据"""
    results: List[R]
    details: BatchProcessingDetails


@dataclass
class PerItemRunReport(Generic[R]):
    """逐项并行结果（按项的键索引）与元数据"""
    results: Dict[str, R]
    details: BatchProcessingDetails


class BatchCoordinator:
    """批处理调度器"""

    def __init__(self, configs: List[EndpointConfig]):
        """
        Args:
            configs: 可用的API配置（至少一个）
        """
        if not configs:
            raise ConfigurationError("没有可用的API配置")
        self.configs = configs[:MAX_PARALLEL_CONFIGS]

    @property
    def parallel_enabled(self) -> bool:
        return len(self.configs) >= 2

    async def run_batches(
        self,
        items: List[T],
        worker: Callable[[List[T], EndpointConfig], Awaitable[List[R]]],
        label: str = "批处理"
    ) -> BatchRunReport[R]:
        """
        分批并发执行

        Args:
            items: 待处理项
            worker: 处理一批的协程函数，参数为(批次, API配置)，返回结果列表
            label: 任务名称（用于日志）

        Returns:
            全部成功批次的结果合并列表及批处理元数据
        """
        start_time = time.time()
        details = BatchProcessingDetails(total_items=len(items))

        if not self.parallel_enabled:
            return await self._run_sequential(items, worker, label, details, start_time)

        batches = partition(items, len(self.configs))
        details.batch_count = len(batches)
        logger.info(f"开始{label}", batch_count=len(batches), total_items=len(items),
                    configs=[c.id for c in self.configs])

        async def run_one(index: int, batch: List[T]) -> List[R]:
            config = self.configs[index % len(self.configs)]
            batch_start = time.time()
            try:
                results = await worker(batch, config)
            except Exception as e:
                logger.warning(f"{label}批次失败", batch_index=index, api_id=config.id,
                               item_count=len(batch), error=str(e))
                details.batches.append({"batchIndex": index, "apiId": config.id, "itemCount": len(batch),
                                        "success": False, "error": str(e)})
                raise
            details.batches.append({"batchIndex": index, "apiId": config.id, "itemCount": len(batch),
                                    "success": True, "duration": round(time.time() - batch_start, 3)})
            return results

        settled = await settle_all(run_one(i, batch) for i, batch in enumerate(batches))
        _raise_configuration_error(settled.failed)

        details.failed_batches = len(settled.failed)
        details.has_errors = bool(settled.failed)
        details.batches.sort(key=lambda b: b["batchIndex"])

        if not settled.succeeded:
            logger.warning(f"{label}全部批次失败，改为顺序执行", batch_count=len(batches))
            details.error = str(settled.failed[0]) if settled.failed else None
            return await self._run_sequential(items, worker, label, details, start_time)

        results = [result for batch_results in settled.succeeded for result in batch_results]
        details.processing_time = round(time.time() - start_time, 3)
        logger.info(f"{label}完成", result_count=len(results), failed_batches=details.failed_batches,
                    processing_time=details.processing_time)
        return BatchRunReport(results=results, details=details)

    async def _run_sequential(
        self,
        items: List[T],
        worker: Callable[[List[T], EndpointConfig], Awaitable[List[R]]],
        label: str,
        details: BatchProcessingDetails,
        start_time: float
    ) -> BatchRunReport[R]:
        """使用第一个配置处理全部项，失败时返回空结果"""
        config = self.configs[0]
        details.fallback_used = True
        details.batch_count = details.batch_count or 1
        try:
            results = await worker(items, config)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.error(f"{label}顺序执行失败", api_id=config.id, item_count=len(items), error=str(e))
            results = []
            details.has_errors = True
            details.error = str(e)

        details.processing_time = round(time.time() - start_time, 3)
        return BatchRunReport(results=results, details=details)

    async def run_per_item(
        self,
        items: List[str],
        worker: Callable[[str, EndpointConfig], Awaitable[R]],
        label: str = "并行处理"
    ) -> PerItemRunReport[R]:
        """
        每项一个任务，按配置轮询并发执行

        Args:
            items: 待处理项（方法名称，同时作为结果的键）
            worker: 处理单项的协程函数，参数为(项, API配置)
            label: 任务名称（用于日志）

        Returns:
            成功项的结果（键为项本身）及元数据；失败的项不出现在结果中
        """
        start_time = time.time()
        details = BatchProcessingDetails(total_items=len(items), batch_count=len(items))
        results: Dict[str, R] = {}

        if not self.parallel_enabled:
            details.fallback_used = True
            config = self.configs[0]
            for item in items:
                try:
                    results[item] = await worker(item, config)
                except ConfigurationError:
                    raise
                except Exception as e:
                    logger.warning(f"{label}失败", item=item, api_id=config.id, error=str(e))
                    details.failed_batches += 1
            details.has_errors = details.failed_batches > 0
            details.processing_time = round(time.time() - start_time, 3)
            return PerItemRunReport(results=results, details=details)

        async def run_one(index: int, item: str) -> Any:
            config = self.configs[index % len(self.configs)]
            try:
                return item, await worker(item, config)
            except Exception as e:
                logger.warning(f"{label}失败", item=item, api_id=config.id, error=str(e))
                raise

        settled = await settle_all(run_one(i, item) for i, item in enumerate(items))
        _raise_configuration_error(settled.failed)
        for item, result in settled.succeeded:
            results[item] = result

        details.failed_batches = len(settled.failed)
        details.has_errors = bool(settled.failed)

        # 全部失败时顺序重试一次
        if items and not results:
            logger.warning(f"{label}全部失败，改为顺序执行", item_count=len(items))
            details.fallback_used = True
            config = self.configs[0]
            for item in items:
                try:
                    results[item] = await worker(item, config)
                except ConfigurationError:
                    raise
                except Exception as e:
                    logger.error(f"{label}顺序执行失败", item=item, api_id=config.id, error=str(e))

        details.processing_time = round(time.time() - start_time, 3)
        logger.info(f"{label}完成", success_count=len(results), failed_count=details.failed_batches,
                    processing_time=details.processing_time)
        return PerItemRunReport(results=results, details=details)
