"""FastAPI app exposing the stuck engine and AI routing endpoints."""

import base64
import binascii
import json
from collections import deque
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, field_validator

from draftmate.api.services.errors import (
    AIProviderError,
    ContentBlockedError,
    InvalidAPIKeyError,
    InvalidResponseError,
    ModelUnavailableError,
    NetworkError,
    NotConfiguredError,
    QuotaExceededError,
    RateLimitedError,
    RequestTimeoutError,
)
from draftmate.api.services.llm import RoutingService, create_routing_service
from draftmate.config import Settings
from draftmate.model.ai import (
    AIModel,
    AIRequest,
    AIResponse,
    AITaskCategory,
    ProviderType,
    ResponseFormat,
)
from draftmate.model.models import StatusModel, TriggerModel
from draftmate.watchers.logger import logger
from draftmate.watchers.stuck import StuckEngine, StuckTicker

log = logger.getChild("api")

# グローバルな状態管理
STATE: dict[str, Any] = {
    "settings": None,
    "engine": None,
    "ticker": None,
    "routing": None,
    "last_trigger": None,
    "logs": deque(maxlen=100),  # ログを保存 (最大100件)
}

# ストリーム途中のエラー行の先頭
STREAM_ERROR_MARKER = "[draftmate:stream-error]"

# AIProviderError → HTTPステータス
ERROR_STATUS: dict[type[AIProviderError], int] = {
    NotConfiguredError: 401,
    InvalidAPIKeyError: 401,
    RateLimitedError: 429,
    RequestTimeoutError: 504,
    NetworkError: 502,
    InvalidResponseError: 502,
    ContentBlockedError: 422,
    ModelUnavailableError: 503,
    QuotaExceededError: 402,
}

# --- ロギング ---


def log_message(message: str) -> None:
    """ログファイルに出力し、ログキューにも追加する."""
    log.info(message)
    STATE["logs"].append(message)


# --- アプリケーションのライフサイクル ---


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """起動時にエンジンとルーティングを初期化し、tickerを回す."""
    settings = Settings.from_env()
    engine = StuckEngine(settings.stuck)
    routing = create_routing_service(settings)
    routing.initialize()
    ticker = StuckTicker(engine, interval=settings.tick_interval)

    STATE.update(
        settings=settings,
        engine=engine,
        routing=routing,
        ticker=ticker,
        last_trigger=None,
    )
    ticker.start()
    log_message(
        "Routing ready. Configured providers: "
        f"{sorted(p.value for p in routing.configured_providers) or 'none'}",
    )
    try:
        yield
    finally:
        await ticker.stop()
        log_message("Stuck ticker stopped")


# FastAPIアプリケーションのインスタンスを作成
app = FastAPI(
    title="Draftmate Writing Assistant",
    description="Stuck detection and multi-provider AI drafting API",
    lifespan=lifespan,
)


def _error_body(exc: AIProviderError) -> dict[str, Any]:
    return {
        "error": exc.kind,
        "message": exc.user_message,
        "transient": exc.is_transient,
        "needs_credentials": exc.needs_credentials,
    }


@app.exception_handler(AIProviderError)
async def provider_error_handler(_request: Request, exc: AIProviderError) -> JSONResponse:
    """AIProviderError をHTTPレスポンスに変換する."""
    status_code = ERROR_STATUS.get(type(exc), 500)
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
        headers["Retry-After"] = str(int(exc.retry_after))
    log_message(f"Provider error: {exc.kind} ({status_code})")
    return JSONResponse(
        status_code=status_code,
        content=_error_body(exc),
        headers=headers,
    )


def _engine() -> StuckEngine:
    engine: StuckEngine | None = STATE["engine"]
    if engine is None:
        raise HTTPException(status_code=503, detail="Stuck engine not running")
    return engine


def _routing() -> RoutingService:
    routing: RoutingService | None = STATE["routing"]
    if routing is None:
        raise HTTPException(status_code=503, detail="AI routing not available")
    return routing


def _provider_type(name: str) -> ProviderType:
    try:
        return ProviderType.parse(name)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


# --- Pydanticモデル定義 ---


class TypingEvent(BaseModel):
    """入力長の変化."""

    current_length: int = Field(ge=0)


class TextEvent(BaseModel):
    text: str


class FocusEvent(BaseModel):
    """アプリのフォーカス遷移."""

    is_distraction: bool
    duration: float = Field(default=0.0, ge=0.0)


class ApiKeyBody(BaseModel):
    api_key: str

    @field_validator("api_key")
    @classmethod
    def api_key_must_not_be_empty(cls, v: str) -> str:
        """キーが空でないこと"""
        if not v or not v.strip():
            msg = "api_key must not be empty"
            raise ValueError(msg)
        return v.strip()


class DefaultModelBody(BaseModel):
    model: AIModel


class GenerateBody(BaseModel):
    """生成リクエスト。images は base64 文字列."""

    task: AITaskCategory
    prompt: str
    system_prompt: str | None = None
    images: list[str] = Field(default_factory=list)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    response_format: ResponseFormat | None = None
    model: AIModel | None = None
    fallback: bool = False

    @field_validator("images")
    @classmethod
    def images_must_be_base64(cls, v: list[str]) -> list[str]:
        for item in v:
            try:
                base64.b64decode(item, validate=True)
            except (binascii.Error, ValueError) as exc:
                msg = "images must be base64 encoded"
                raise ValueError(msg) from exc
        return v

    def decoded_images(self) -> tuple[bytes, ...]:
        return tuple(base64.b64decode(item) for item in self.images)

    def to_request(self) -> AIRequest:
        """タスクの既定値を補ったリクエストを作る（モデル直指定用）."""
        return AIRequest(
            prompt=self.prompt,
            system_prompt=self.system_prompt,
            images=self.decoded_images(),
            temperature=(
                self.task.default_temperature
                if self.temperature is None
                else self.temperature
            ),
            max_tokens=(
                self.task.default_max_tokens if self.max_tokens is None else self.max_tokens
            ),
            response_format=self.response_format,
        )

    def routing_kwargs(self) -> dict[str, Any]:
        return {
            "system_prompt": self.system_prompt,
            "images": self.decoded_images(),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "response_format": self.response_format,
        }


def _response_dict(response: AIResponse) -> dict[str, Any]:
    usage = response.usage
    return {
        "content": response.content,
        "model": response.model.value,
        "provider": response.model.provider.value,
        "finish_reason": response.finish_reason.value,
        "usage": (
            {
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
                "total_tokens": usage.total_tokens,
            }
            if usage
            else None
        ),
    }


# --- イベント取り込み ---


@app.post("/session/start")
async def start_session() -> dict[str, Any]:
    """新しい執筆セッションを開始する（エンジンを初期化）."""
    _engine().reset()
    STATE["last_trigger"] = None
    log_message("Session started")
    return {"ok": True}


@app.post("/events/typing")
async def ingest_typing(event: TypingEvent) -> dict[str, Any]:
    engine = _engine()
    engine.record_typing(event.current_length)
    return {"ok": True, "deletion_count": engine.deletion_count}


@app.post("/events/text")
async def ingest_text(event: TextEvent) -> dict[str, Any]:
    _engine().record_text_content(event.text)
    return {"ok": True}


@app.post("/events/navigation")
async def ingest_navigation() -> dict[str, Any]:
    _engine().record_navigation()
    return {"ok": True}


@app.post("/events/focus")
async def ingest_focus(event: FocusEvent) -> dict[str, Any]:
    """フォーカス遷移を取り込む。distraction から戻ると信号が減衰し始める."""
    engine = _engine()
    engine.record_app_focus(is_distraction=event.is_distraction, duration=event.duration)
    return {
        "ok": True,
        "in_distraction": engine.in_distraction_context,
        "distraction_signal": engine.distraction_signal,
    }


# --- 状態と割り込み判定 ---


@app.get("/status")
async def get_current_status() -> dict[str, Any]:
    """現在のエンジン状態とプロバイダ設定を取得する."""
    routing = _routing()
    status: StatusModel = {
        **_engine().snapshot(),
        "configured_providers": sorted(p.value for p in routing.configured_providers),
        "default_model": routing.default_model.value,
    }
    return {**status, "logs": list(STATE["logs"])[-20:]}


@app.get("/trigger")
async def get_trigger() -> TriggerModel:
    """今ヘルプを出すべきかを判定する."""
    decision = _engine().should_trigger_help()
    stuck_type = decision.stuck_type
    result: TriggerModel = {
        "should_trigger": decision.should_trigger,
        "stuck_type": stuck_type.value if stuck_type else None,
        "display_name": stuck_type.display_name if stuck_type else None,
        "help_prompt": stuck_type.help_prompt if stuck_type else None,
    }
    if decision.should_trigger:
        STATE["last_trigger"] = result
    return result


@app.post("/trigger/ack")
async def acknowledge_trigger() -> dict[str, Any]:
    """ヘルプを表示したことを記録し、クールダウンを開始する."""
    _engine().record_help_triggered()
    log_message("Help trigger acknowledged")
    return {"ok": True, "last_trigger": STATE["last_trigger"]}


# --- 生成 ---


@app.post("/generate")
def generate(body: GenerateBody) -> dict[str, Any]:
    """タスクに応じたモデルで生成する（ブロッキングI/Oのためスレッドプールで実行）."""
    routing = _routing()
    if body.model is not None:
        response = routing.generate_with_model(body.model, body.to_request())
    elif body.fallback:
        response = routing.generate_with_fallback(
            body.task, body.prompt, **body.routing_kwargs()
        )
    else:
        response = routing.generate(body.task, body.prompt, **body.routing_kwargs())
    log_message(
        f"Generated {body.task.value} with {response.model.value} "
        f"({response.finish_reason.value})"
    )
    return _response_dict(response)


@app.post("/generate/stream")
def generate_stream(body: GenerateBody) -> StreamingResponse:
    """生成結果をプレーンテキストで逐次返す."""
    routing = _routing()
    if body.model is not None:
        fragments = routing.stream_with_model(body.model, body.to_request())
    else:
        fragments = routing.generate_stream(body.task, body.prompt, **body.routing_kwargs())
    log_message(f"Streaming {body.task.value}")
    return StreamingResponse(
        _relay(fragments),
        media_type="text/plain; charset=utf-8",
        headers={"X-Stream-Error-Marker": STREAM_ERROR_MARKER},
    )


def _relay(fragments: Iterator[str]) -> Iterator[str]:
    """ストリーム途中のエラーはステータスを変えられない.

    代わりに改行 + STREAM_ERROR_MARKER + エラーJSON の1行を最後に送る。
    この行が無く本文が終われば正常終了。
    """
    try:
        yield from fragments
    except AIProviderError as exc:
        log_message(f"Stream aborted: {exc.kind}")
        yield f"\n{STREAM_ERROR_MARKER} {json.dumps(_error_body(exc))}\n"
    finally:
        close = getattr(fragments, "close", None)
        if close is not None:
            close()


# --- プロバイダ設定 ---


@app.post("/providers/{provider}/key")
async def configure_provider(provider: str, body: ApiKeyBody) -> dict[str, Any]:
    """APIキーを保存し、プロバイダを有効にする."""
    provider_type = _provider_type(provider)
    routing = _routing()
    routing.configure_provider(provider_type, body.api_key)
    log_message(f"{provider_type.value} configured")
    return {
        "ok": True,
        "configured_providers": sorted(p.value for p in routing.configured_providers),
    }


@app.post("/providers/{provider}/validate")
def validate_provider_key(provider: str, body: ApiKeyBody) -> dict[str, Any]:
    """キーを試す（保存はしない）."""
    provider_type = _provider_type(provider)
    valid = _routing().validate_api_key(body.api_key, provider_type)
    log_message(f"{provider_type.value} key validation: {valid}")
    return {"provider": provider_type.value, "valid": valid}


@app.post("/model/default")
async def set_default_model(body: DefaultModelBody) -> dict[str, Any]:
    _routing().set_default_model(body.model)
    log_message(f"Default model set to {body.model.value}")
    return {"ok": True, "default_model": body.model.value}
