"""Coze UI entrypoint."""
from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import time
from typing import Any

import gradio as gr
import torch

from .acquisition import ModelCache
from .config import AppConfig, GenerationDefaults, ModelSpec, RootConfig, load_config
from .engines.airllm_engine import AirLLMAdapter
from .engines.base import DeviceSpec
from .errors import HistoryLoadError
from .generation.sampler import MODE_NAMES, ModePreset, resolve_mode
from .history.fuzzy import FuzzyMatcher
from .history.store import HistoryStore
from .metrics.instrumentation import Instrumentation, format_stats
from .registry import ModelRegistry
from .session.controller import ModelLoader, ProgressFn, SessionController, SessionState
from .ui.state import AppState

logger = logging.getLogger(__name__)

TRANSCRIPT_ENTRIES = 50


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Coze: chat with a local quantized model")
    parser.add_argument("--config", default="configs/coze.yaml")
    parser.add_argument("--host")
    parser.add_argument("--port", type=int)
    parser.add_argument("--title")
    parser.add_argument("--concurrency-limit", type=int)
    parser.add_argument("--sampling-interval-ms", type=int)
    parser.add_argument("--gpu-index", type=int)
    parser.add_argument("--history")
    parser.add_argument("--log-level")
    parser.add_argument("--offline", action="store_true")
    parser.add_argument("--share", action="store_true")
    return parser.parse_args()


def load_root_config(path: str) -> RootConfig:
    if not os.path.exists(path):
        return RootConfig()
    return load_config(path)


def apply_overrides(cfg: RootConfig, args: argparse.Namespace) -> RootConfig:
    if args.title:
        cfg.app.title = args.title
    if args.host:
        cfg.app.host = args.host
    if args.port is not None:
        cfg.app.port = args.port
    if args.concurrency_limit is not None:
        cfg.app.concurrency_limit = args.concurrency_limit
    if args.sampling_interval_ms is not None:
        cfg.app.sampling_interval_ms = args.sampling_interval_ms
    if args.gpu_index is not None:
        cfg.app.gpu_index = args.gpu_index
    if args.history:
        cfg.app.history_path = args.history
    if args.log_level:
        cfg.app.log_level = args.log_level.upper()
    if args.offline:
        cfg.app.offline_mode = True
    return cfg


def ensure_offline(cfg: AppConfig) -> None:
    if cfg.offline_mode:
        os.environ.setdefault("HF_HUB_OFFLINE", "1")
        os.environ.setdefault("TRANSFORMERS_OFFLINE", "1")


def _build_device(cfg: AppConfig) -> DeviceSpec:
    if torch.cuda.is_available() and cfg.gpu_index is not None and cfg.gpu_index >= 0:
        return DeviceSpec(kind="cuda", gpu_index=cfg.gpu_index)
    return DeviceSpec(kind="cpu", gpu_index=None)


def make_loader(cfg: RootConfig, cache: ModelCache) -> ModelLoader:
    device = _build_device(cfg.app)

    def load(spec: ModelSpec, progress: ProgressFn) -> AirLLMAdapter:
        model_path = cache.ensure(spec, lambda fraction, message: progress(fraction * 0.5, message))
        progress(0.5, f"Loading weights for {spec.display_name}")
        adapter = AirLLMAdapter(family_hint=spec.family_hint)
        adapter.load(
            model_path=model_path,
            compression=spec.compression,
            layer_cache_dir=cache.layer_cache_dir(spec),
            device=device,
            max_context=cfg.generation_defaults.max_context,
        )
        progress(1.0, f"{spec.display_name} ready")
        return adapter

    return load


def _preset_from_ui(
    defaults: GenerationDefaults, mode_name: str, temperature: float, top_p: float, top_k: int
) -> ModePreset:
    gen = dataclasses.replace(
        defaults,
        mode=mode_name,
        temperature=float(temperature),
        top_p=float(top_p),
        top_k=int(top_k),
    )
    return resolve_mode(gen)


def _transcript(history: HistoryStore) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = []
    for entry in history.entries()[-TRANSCRIPT_ENTRIES:]:
        messages.append({"role": "user", "content": entry.prompt})
        messages.append({"role": "assistant", "content": entry.reply})
    return messages


def _search_rows(state: AppState, query: str, limit: int) -> list[list[Any]]:
    matches = state.matcher.rank(query or "", state.controller.history.entries(), limit)
    return [[m.entry.id, m.entry.timestamp, m.entry.prompt] for m in matches]


def build_app(cfg: RootConfig, controller: SessionController, registry: ModelRegistry) -> gr.Blocks:
    state = AppState(controller=controller, matcher=FuzzyMatcher.from_config(cfg.fuzzy))
    defaults = cfg.generation_defaults
    poll_interval = max(cfg.app.poll_interval_ms, 10) / 1000.0

    model_choices = registry.choices()
    default_model = model_choices[0][1] if model_choices else None

    with gr.Blocks(title=cfg.app.title) as demo:
        gr.Markdown(f"# {cfg.app.title}")

        with gr.Row():
            model_dd = gr.Dropdown(label="Model", choices=model_choices, value=default_model)
            load_btn = gr.Button("Load model")
        load_status = gr.Markdown(state.status)

        with gr.Accordion("Generation", open=False):
            with gr.Row():
                mode_dd = gr.Dropdown(label="Mode", choices=MODE_NAMES, value=defaults.mode)
                max_new = gr.Slider(
                    minimum=1,
                    maximum=4096,
                    step=1,
                    value=defaults.max_new_tokens,
                    label="Max new tokens",
                )
                seed_box = gr.Number(label="Seed (blank = random)", value=defaults.seed, precision=0)
            with gr.Row():
                temperature = gr.Slider(
                    minimum=0.05,
                    maximum=5.0,
                    step=0.05,
                    value=defaults.temperature,
                    label="Temperature",
                )
                top_p = gr.Slider(minimum=0.05, maximum=1.0, step=0.05, value=defaults.top_p, label="Top-p")
                top_k = gr.Slider(minimum=1, maximum=100, step=1, value=defaults.top_k, label="Top-k")

        chatbot = gr.Chatbot(label="Chat", type="messages", value=_transcript(controller.history))
        user_input = gr.Textbox(label="Message", placeholder="Prompt me! (Enter to send)")
        with gr.Row():
            send_btn = gr.Button("Send", variant="primary")
            stop_btn = gr.Button("Stop")
        notice_md = gr.Markdown("")
        metrics_md = gr.Markdown(format_stats(None))

        with gr.Accordion("History", open=False):
            with gr.Row():
                older_btn = gr.Button("Older")
                newer_btn = gr.Button("Newer")
            search_box = gr.Textbox(label="Search prompts")
            results = gr.Dataframe(
                headers=["id", "timestamp", "prompt"],
                value=_search_rows(state, "", cfg.fuzzy.limit),
                interactive=False,
            )

        def _handle_load(model_key: str | None):
            if not model_key:
                yield "**error:** select a model"
                return
            try:
                spec = registry.get(model_key)
            except KeyError as exc:
                yield f"**error:** {exc}"
                return
            started = controller.load_model(spec)
            state.poll()
            if not started:
                yield state.take_notices() or state.status
                return
            yield state.status
            while controller.state is SessionState.LOADING:
                time.sleep(poll_interval)
                state.poll()
                yield state.status

        def _handle_chat(
            message: str,
            messages: list[dict[str, str]],
            mode_name: str,
            max_new_val: int,
            seed_val: float | None,
            temperature_val: float,
            top_p_val: float,
            top_k_val: int,
        ):
            chat = list(messages or [])
            try:
                preset = _preset_from_ui(defaults, mode_name, temperature_val, top_p_val, top_k_val)
            except ValueError as exc:
                yield chat, f"**error:** {exc}", gr.update(), message
                return

            seed = int(seed_val) if seed_val is not None else None
            request_id = controller.submit(message, max_new_tokens=int(max_new_val), seed=seed, preset=preset)
            if request_id is None:
                state.poll()
                yield chat, state.take_notices(), gr.update(), message
                return

            state.reply = ""
            state.navigator.reset()
            chat = chat + [
                {"role": "user", "content": controller.current_request.prompt},
                {"role": "assistant", "content": ""},
            ]
            yield chat, "", gr.update(), ""
            while True:
                time.sleep(poll_interval)
                state.poll()
                chat[-1] = {"role": "assistant", "content": state.reply}
                if controller.state is SessionState.GENERATING:
                    yield chat, "", gr.update(), ""
                    continue
                status = state.take_notices()
                if controller.state is SessionState.ERRORED and controller.last_error:
                    status = f"**error:** {controller.last_error}\n{status}".strip()
                yield chat, status, format_stats(controller.last_stats), ""
                break

        def _handle_stop() -> str:
            if controller.cancel():
                return "Stopping..."
            return ""

        def _recall(direction: str):
            entries = controller.history.entries()
            navigator = state.navigator
            prompt = navigator.up(entries) if direction == "older" else navigator.down(entries)
            if prompt is None:
                edge = "earlier" if direction == "older" else "later"
                return gr.update(), f"No {edge} matching prompt."
            return prompt, ""

        def _pick_result(query: str, evt: gr.SelectData):
            rows = _search_rows(state, query, cfg.fuzzy.limit)
            row = evt.index[0] if isinstance(evt.index, (list, tuple)) else evt.index
            if not isinstance(row, int) or not 0 <= row < len(rows):
                return gr.update()
            return rows[row][2]

        chat_inputs = [user_input, chatbot, mode_dd, max_new, seed_box, temperature, top_p, top_k]
        chat_outputs = [chatbot, notice_md, metrics_md, user_input]
        send_btn.click(_handle_chat, inputs=chat_inputs, outputs=chat_outputs)
        user_input.submit(_handle_chat, inputs=chat_inputs, outputs=chat_outputs)
        stop_btn.click(_handle_stop, outputs=[notice_md], queue=False)
        load_btn.click(_handle_load, inputs=[model_dd], outputs=[load_status])

        user_input.input(lambda text: state.navigator.reset(text), inputs=[user_input], queue=False)
        older_btn.click(lambda: _recall("older"), outputs=[user_input, notice_md], queue=False)
        newer_btn.click(lambda: _recall("newer"), outputs=[user_input, notice_md], queue=False)
        search_box.change(
            lambda query: _search_rows(state, query, cfg.fuzzy.limit),
            inputs=[search_box],
            outputs=[results],
            queue=False,
        )
        results.select(_pick_result, inputs=[search_box], outputs=[user_input])
        chatbot.change(
            lambda: _search_rows(state, "", cfg.fuzzy.limit),
            outputs=[results],
            queue=False,
        )

    return demo


def main() -> None:
    args = parse_args()
    cfg = apply_overrides(load_root_config(args.config), args)
    logging.basicConfig(
        level=getattr(logging, cfg.app.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ensure_offline(cfg.app)

    try:
        history = HistoryStore(cfg.app.history_path)
    except HistoryLoadError as exc:
        logger.error("History could not be loaded: %s", exc)
        raise SystemExit(f"History file is corrupted, fix or move it away: {exc}") from exc

    registry = ModelRegistry(cfg.models)
    cache = ModelCache(cfg.app.cache_dir, offline=cfg.app.offline_mode)
    device = _build_device(cfg.app)
    controller = SessionController(
        history,
        loader=make_loader(cfg, cache),
        defaults=cfg.generation_defaults,
        instrumentation=Instrumentation(
            cfg.app.sampling_interval_ms,
            device.gpu_index,
            enabled=cfg.app.collect_metrics,
        ),
        history_turns=cfg.app.history_turns,
        stall_timeout_s=cfg.app.stall_timeout_s,
    )

    app = build_app(cfg, controller, registry)
    app.queue(default_concurrency_limit=cfg.app.concurrency_limit)
    try:
        app.launch(server_name=cfg.app.host, server_port=cfg.app.port, share=args.share)
    finally:
        controller.shutdown()


if __name__ == "__main__":
    main()
