"""
权重方法推荐API
- 方法库概要
- 执行推荐流程（同步返回 / SSE推送阶段进度）
"""
from fastapi import APIRouter, HTTPException, Header
from fastapi.responses import StreamingResponse
from typing import AsyncGenerator, Dict, List, Optional
import asyncio
import json

import structlog

from weight_advisor.schemas.recommendation import RecommendationBundle, RecommendationRequest
from weight_advisor.schemas.weight_method import MethodSummary, WeightMethod
from weight_advisor.services.credential_resolver import CredentialResolver
from weight_advisor.services.llm_transport import get_llm_transport
from weight_advisor.services.method_catalog import get_builtin_catalog, validate_catalog
from weight_advisor.services.recommendation_orchestrator import RecommendationOrchestrator
from weight_advisor.services.result_adapters import to_display_rows
from weight_advisor.services.run_manager import PipelineRunState, Runner, RunSessionManager
from weight_advisor.utils.pipeline_exception import ConfigurationError

logger = structlog.get_logger()
router = APIRouter(prefix="/recommendations", tags=["recommendations"])

# 会话ID -> 会话管理器（同一会话的新请求会取消上一次运行）
_sessions: Dict[str, RunSessionManager] = {}


def get_session_manager(session_id: Optional[str]) -> RunSessionManager:
    """获取会话管理器，未提供会话ID时每次请求独立"""
    if not session_id:
        return RunSessionManager()
    if session_id not in _sessions:
        _sessions[session_id] = RunSessionManager()
    return _sessions[session_id]


def release_session(session_id: Optional[str], session: RunSessionManager) -> None:
    """会话没有新的运行时移除，运行结果不再保留在会话表中"""
    if session_id and _sessions.get(session_id) is session and session.idle:
        del _sessions[session_id]
        logger.debug("会话已释放", session_id=session_id)


def start_session_run(session_id: Optional[str], runner: Runner) -> PipelineRunState:
    """在会话中启动运行，运行结束后释放空闲会话"""
    session = get_session_manager(session_id)
    state = session.start(runner)
    state.result.add_done_callback(lambda _: release_session(session_id, session))
    return state


def build_orchestrator(request: RecommendationRequest) -> RecommendationOrchestrator:
    """根据请求中的用户密钥构建编排器"""
    transport = get_llm_transport()
    if request.user_api_keys:
        transport = transport.with_credentials(CredentialResolver.from_settings(user_keys=request.user_api_keys))
    return RecommendationOrchestrator(transport)


def resolve_methods(request: RecommendationRequest) -> List[WeightMethod]:
    """
    请求未提供方法库时使用内置方法库

    Raises:
        HTTPException: 方法库为空或格式错误（400）
    """
    if request.weight_methods is None:
        return get_builtin_catalog()
    try:
        return validate_catalog(request.weight_methods)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=e.to_dict())


def _bundle_response(bundle: RecommendationBundle) -> Dict:
    return {
        **bundle.model_dump(by_alias=True),
        "displayRows": [row.model_dump(by_alias=True) for row in to_display_rows(bundle)],
    }


@router.get("/methods")
async def list_methods():
    """
    获取内置方法库概要

    Returns:
        方法名称、类型和简介
    """
    methods = get_builtin_catalog()
    return {
        "total": len(methods),
        "methods": [
            MethodSummary(name=m.name, type=m.type, detail=m.detail).model_dump(by_alias=True)
            for m in methods
        ],
    }


@router.post("")
async def create_recommendation(
    request: RecommendationRequest,
    x_session_id: Optional[str] = Header(None, description="会话ID，同一会话的新请求会取消上一次推荐")
):
    """
    执行推荐流程并返回完整结果

    Args:
        request: 问卷数据、可选的用户需求/数据特征、可选的方法库和用户密钥
        x_session_id: 会话ID（可选）

    Returns:
        推荐结果及展示行
    """
    methods = resolve_methods(request)
    orchestrator = build_orchestrator(request)

    async def runner(state: PipelineRunState):
        return await orchestrator.run_recommendation(
            request.questionnaire_data,
            methods,
            user_needs=request.user_needs,
            data_features=request.data_features,
            run_state=state,
        )

    try:
        bundle = await start_session_run(x_session_id, runner).result
    except ConfigurationError as e:
        logger.error("推荐流程配置错误", error=e.error_message)
        raise HTTPException(status_code=400, detail=e.to_dict())

    if bundle is None:
        raise HTTPException(status_code=409, detail="推荐流程已被新的请求取消")

    return _bundle_response(bundle)


@router.post("/stream")
async def stream_recommendation(
    request: RecommendationRequest,
    x_session_id: Optional[str] = Header(None, description="会话ID，同一会话的新请求会取消上一次推荐")
):
    """
    执行推荐流程并通过SSE推送阶段进度

    事件：stage（阶段变化）、result（最终结果）、cancelled、error
    """
    methods = resolve_methods(request)
    orchestrator = build_orchestrator(request)

    async def generate_stream() -> AsyncGenerator[str, None]:
        """生成SSE流"""
        queue: asyncio.Queue = asyncio.Queue()

        async def on_stage_change(stage: str, message: str) -> None:
            await queue.put({"type": "stage", "stage": stage, "message": message})

        async def runner(state: PipelineRunState):
            return await orchestrator.run_recommendation(
                request.questionnaire_data,
                methods,
                user_needs=request.user_needs,
                data_features=request.data_features,
                on_stage_change=on_stage_change,
                run_state=state,
            )

        state = start_session_run(x_session_id, runner)
        result_future = state.result
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, result_future}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield f"data: {json.dumps(getter.result(), ensure_ascii=False)}\n\n"
                    continue
                getter.cancel()
                break

            while not queue.empty():
                yield f"data: {json.dumps(queue.get_nowait(), ensure_ascii=False)}\n\n"

            bundle = result_future.result()
            if bundle is None:
                yield f"data: {json.dumps({'type': 'cancelled'})}\n\n"
            else:
                payload = {"type": "result", "data": _bundle_response(bundle)}
                yield f"data: {json.dumps(payload, ensure_ascii=False, default=str)}\n\n"

        except ConfigurationError as e:
            logger.error("流式推荐配置错误", error=e.error_message)
            yield f"data: {json.dumps({'type': 'error', 'error': e.to_dict()}, ensure_ascii=False)}\n\n"
        except Exception as e:
            logger.error("流式推荐失败", run_id=state.run_id, error=str(e))
            yield f"data: {json.dumps({'type': 'error', 'error': str(e)}, ensure_ascii=False)}\n\n"
        finally:
            # 客户端断开时取消运行，已发出的LLM请求完成后结果被丢弃
            if not result_future.done():
                state.token.cancel("客户端断开连接")

    return StreamingResponse(
        generate_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"  # 禁用Nginx缓冲
        }
    )
