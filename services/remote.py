from __future__ import annotations

import asyncio
import http.client
import json
import logging
import re
import socket
import time
from functools import partial
from typing import Any, Callable, Iterable, Sequence
from urllib import error, request

from services.analyzer import AnalysisRun, Analyzer, ProgressCallback, StatusCallback
from services.config import DEFAULT_REMOTE_ENDPOINT, DEFAULT_REMOTE_MODEL
from services.errors import (
    MalformedResponseError,
    QuotaExhaustedError,
    RateLimitError,
    RemoteServiceError,
    RemoteTimeoutError,
)
from services.nodes import validate_nodes
from services.progress import ProgressReporter
from services.types import MAX_RESULT_CONFIDENCE, KPIScore, Node, SentimentResult, clamp

logger = logging.getLogger(__name__)

Transport = Callable[[dict[str, Any]], str]

DEFAULT_REMOTE_BATCH_SIZE = 25
DEFAULT_PARALLEL_BATCHES = 4
DEFAULT_MAX_TEXT_CHARS = 280
DEFAULT_RETRIES = 1
FALLBACK_CONFIDENCE = 0.3
MISSING_CONFIDENCE = 0.5

ABORT_ADVISORIES = {
    "rate_limit": "The analysis service is rate limiting requests. Wait a moment and retry the remaining texts.",
    "quota_exhausted": "The analysis service quota is exhausted. Add credits before retrying.",
    "timeout": "The analysis request timed out. Try analyzing fewer texts at once.",
}
POLARITY_CODES = {
    "pos": "positive",
    "positive": "positive",
    "neu": "neutral",
    "neutral": "neutral",
    "neg": "negative",
    "negative": "negative",
}

FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
TAG_RE = re.compile(r"</?[A-Za-z][A-Za-z0-9_-]*>")
BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)\s*:")
TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
MISSING_COMMA_RE = re.compile(r"([}\]])\s*([{\[])")
PY_LITERAL_RE = re.compile(r"\b(True|False|None)\b")
PY_LITERALS = {"True": "true", "False": "false", "None": "null"}
ITEM_KEYS = frozenset({"i", "p", "s", "n", "polarity", "score", "node"})


# =========================
# Prompting / transport
# =========================


def build_system_prompt(nodes: Sequence[Node]) -> str:
    node_lines = "\n".join(
        f'- {json.dumps(n.id)}: {n.name} ({", ".join(n.keywords[:10])})' for n in nodes
    )
    return (
        "You analyze the sentiment of short texts.\n"
        "Nodes:\n"
        f"{node_lines}\n"
        "Return a JSON array only, one object per input line, in input order.\n"
        'Each object: {"i":int,"p":"pos"|"neu"|"neg","s":float,"n":"nodeId","c":float,'
        '"k":[trust,optimism,frustration,clarity,access,fairness]}\n'
        "s and every k value are in -1..1, c is in 0..1. No explanation."
    )


def build_user_prompt(texts: Sequence[str], max_chars: int = DEFAULT_MAX_TEXT_CHARS) -> str:
    return "\n".join(f"{i}:{json.dumps(str(t or '')[:max_chars], ensure_ascii=False)}" for i, t in enumerate(texts))


def read_event_stream(lines: Iterable[bytes | str]) -> str:
    parts: list[str] = []
    for raw_line in lines:
        line = raw_line.decode("utf-8", errors="replace") if isinstance(raw_line, bytes) else raw_line
        line = line.strip()
        if not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if data == "[DONE]":
            break
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping undecodable stream chunk")
            continue
        choices = chunk.get("choices") if isinstance(chunk, dict) else None
        first = choices[0] if isinstance(choices, list) and choices else None
        delta = first.get("delta") if isinstance(first, dict) else None
        if not isinstance(delta, dict):
            continue
        content = delta.get("content")
        if content:
            parts.append(str(content))
    return "".join(parts)


def chat_completion(
    payload: dict[str, Any],
    endpoint: str = DEFAULT_REMOTE_ENDPOINT,
    api_key: str | None = None,
    timeout_sec: float = 60.0,
) -> str:
    data = json.dumps(payload).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    req = request.Request(endpoint, method="POST", data=data, headers=headers)
    try:
        with request.urlopen(req, timeout=timeout_sec) as resp:
            if payload.get("stream"):
                return read_event_stream(resp)
            raw = resp.read().decode("utf-8", errors="replace")
    except error.HTTPError as exc:
        if exc.code == 429:
            raise RateLimitError("remote service rate limit reached", status_code=429) from exc
        if exc.code == 402:
            raise QuotaExhaustedError("remote service credits exhausted", status_code=402) from exc
        raise RemoteServiceError(f"remote request failed: {exc.code}", status_code=exc.code) from exc
    except (TimeoutError, socket.timeout) as exc:
        raise RemoteTimeoutError("remote request timed out") from exc
    except error.URLError as exc:
        if isinstance(exc.reason, (TimeoutError, socket.timeout)):
            raise RemoteTimeoutError("remote request timed out") from exc
        raise RemoteServiceError(f"remote request failed: {exc.reason}") from exc
    except (OSError, http.client.HTTPException) as exc:
        raise RemoteServiceError(f"remote transport error: {exc.__class__.__name__}: {exc}") from exc

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MalformedResponseError("remote envelope is not valid JSON") from exc
    choices = parsed.get("choices") if isinstance(parsed, dict) else None
    if not choices:
        raise MalformedResponseError("remote envelope has no choices")
    first = choices[0] if isinstance(choices, list) else None
    message = first.get("message") if isinstance(first, dict) else None
    if not isinstance(message, dict):
        raise MalformedResponseError("remote envelope has no message object")
    return str(message.get("content", "") or "")


# =========================
# Response repair
# =========================


def _strip_markup(content: str) -> str:
    body = str(content or "").strip()
    fenced = FENCE_RE.search(body)
    if fenced:
        body = fenced.group(1).strip()
    return TAG_RE.sub("", body).strip()


def repair_json(body: str) -> str:
    fixed = body
    if '"' not in fixed and "'" in fixed:
        fixed = fixed.replace("'", '"')
    fixed = PY_LITERAL_RE.sub(lambda m: PY_LITERALS[m.group(1)], fixed)
    fixed = BARE_KEY_RE.sub(r'\1"\2":', fixed)
    fixed = MISSING_COMMA_RE.sub(r"\1,\2", fixed)
    fixed = TRAILING_COMMA_RE.sub(r"\1", fixed)
    return fixed


def _as_item_list(parsed: Any) -> list[Any] | None:
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        for key in ("results", "items", "data"):
            if isinstance(parsed.get(key), list):
                return parsed[key]
        return [parsed]
    return None


def _align(items: list[Any], expected: int) -> list[dict[str, Any] | None]:
    dicts = [item if isinstance(item, dict) else None for item in items]
    indexed = [d for d in dicts if d is not None]
    has_indices = bool(indexed) and all(
        isinstance(d.get("i"), int) and not isinstance(d.get("i"), bool) and 0 <= d["i"] < expected for d in indexed
    )
    if has_indices:
        out: list[dict[str, Any] | None] = [None] * expected
        for d in indexed:
            if out[d["i"]] is None:
                out[d["i"]] = d
        return out
    aligned = dicts[:expected]
    return aligned + [None] * (expected - len(aligned))


def top_level_objects(body: str) -> list[str]:
    """Balanced `{...}` spans that are not nested in another object.

    An object left open by a truncated response is skipped and the scan
    resumes just after its opening brace.
    """
    out: list[str] = []
    pos = 0
    while True:
        start = body.find("{", pos)
        if start < 0:
            return out
        depth = 0
        in_string = False
        escaped = False
        end = -1
        for idx in range(start, len(body)):
            ch = body[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
            elif ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    end = idx
                    break
        if end < 0:
            pos = start + 1
            continue
        out.append(body[start : end + 1])
        pos = end + 1


def parse_analysis_items(content: str, expected: int) -> list[dict[str, Any] | None]:
    body = _strip_markup(content)
    if not body:
        raise MalformedResponseError("empty response")

    left = body.find("[")
    right = body.rfind("]")
    candidate = body[left : right + 1] if left >= 0 and right > left else body
    for attempt in (candidate, repair_json(candidate)):
        try:
            parsed = json.loads(attempt)
        except json.JSONDecodeError:
            continue
        items = _as_item_list(parsed)
        if items is not None:
            return _align(items, expected)

    salvaged: list[dict[str, Any]] = []
    for fragment in top_level_objects(body):
        for attempt in (fragment, repair_json(fragment)):
            try:
                obj = json.loads(attempt)
            except json.JSONDecodeError:
                continue
            if isinstance(obj, dict) and ITEM_KEYS & obj.keys():
                salvaged.append(obj)
            break
    if not salvaged:
        raise MalformedResponseError("could not parse remote response")
    logger.info("Salvaged %d object(s) from a malformed response", len(salvaged))
    return _align(salvaged, expected)


# =========================
# Record mapping
# =========================


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def fallback_result(text: str, nodes: Sequence[Node]) -> SentimentResult:
    return SentimentResult(
        text=text,
        node_id=nodes[0].id,
        node_name=nodes[0].name,
        polarity="neutral",
        polarity_score=0.0,
        kpi_scores=KPIScore(),
        confidence=FALLBACK_CONFIDENCE,
        is_fallback=True,
    )


def result_from_item(text: str, item: dict[str, Any] | None, nodes: Sequence[Node]) -> SentimentResult | None:
    if not isinstance(item, dict):
        return None
    node_by_id = {n.id: n for n in nodes}
    node = node_by_id.get(str(item.get("n", item.get("node", ""))).strip(), nodes[0])

    polarity = POLARITY_CODES.get(str(item.get("p", item.get("polarity", ""))).strip().lower(), "neutral")
    score = _as_float(item.get("s", item.get("score")))
    if score is not None and (
        (polarity == "positive" and score < 0) or (polarity == "negative" and score > 0)
    ):
        # Score sign wins over a contradicting label.
        polarity = "positive" if score > 0 else "negative"
    confidence = _as_float(item.get("c", item.get("confidence")))

    raw_kpis = item.get("k", item.get("kpi"))
    if isinstance(raw_kpis, (list, tuple)):
        kpis = KPIScore.from_sequence(raw_kpis)
    elif isinstance(raw_kpis, dict):
        kpis = KPIScore.from_mapping(raw_kpis)
    else:
        kpis = KPIScore()

    return SentimentResult(
        text=text,
        node_id=node.id,
        node_name=node.name,
        polarity=polarity,
        polarity_score=clamp(score) if score is not None else 0.0,
        kpi_scores=kpis,
        confidence=clamp(confidence if confidence is not None else MISSING_CONFIDENCE, 0.0, MAX_RESULT_CONFIDENCE),
    )


# =========================
# Analyzer
# =========================


class RemoteAnalyzer(Analyzer):
    name = "remote"

    def __init__(
        self,
        transport: Transport | None = None,
        endpoint: str = DEFAULT_REMOTE_ENDPOINT,
        api_key: str | None = None,
        model: str = DEFAULT_REMOTE_MODEL,
        batch_size: int = DEFAULT_REMOTE_BATCH_SIZE,
        parallel_batches: int = DEFAULT_PARALLEL_BATCHES,
        max_text_chars: int = DEFAULT_MAX_TEXT_CHARS,
        max_tokens: int = 4000,
        request_timeout_sec: float = 60.0,
        run_timeout_sec: float | None = None,
        stream: bool = False,
        retries: int = DEFAULT_RETRIES,
    ) -> None:
        self.transport = transport or partial(
            chat_completion, endpoint=endpoint, api_key=api_key, timeout_sec=request_timeout_sec
        )
        self.model = model
        self.batch_size = max(1, int(batch_size))
        self.parallel_batches = max(1, int(parallel_batches))
        self.max_text_chars = max(1, int(max_text_chars))
        self.max_tokens = int(max_tokens)
        self.run_timeout_sec = run_timeout_sec
        self.stream = bool(stream)
        self.retries = max(0, int(retries))

    def build_payload(self, texts: Sequence[str], nodes: Sequence[Node]) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": build_system_prompt(nodes)},
                {"role": "user", "content": build_user_prompt(texts, self.max_text_chars)},
            ],
            "temperature": 0.0,
            "max_tokens": self.max_tokens,
        }
        if self.stream:
            payload["stream"] = True
        return payload

    async def _request(self, batch_index: int, payload: dict[str, Any]) -> str | None:
        attempt = 0
        while True:
            try:
                return await asyncio.to_thread(self.transport, payload)
            except (RateLimitError, QuotaExhaustedError, RemoteTimeoutError):
                raise
            except TimeoutError as exc:
                raise RemoteTimeoutError(f"remote request timed out: {exc}") from exc
            except (RemoteServiceError, OSError, http.client.HTTPException) as exc:
                attempt += 1
                if attempt > self.retries:
                    logger.error("Batch %d failed after %d attempt(s): %s", batch_index + 1, attempt, exc)
                    return None
                logger.info("Retrying batch %d after error: %s", batch_index + 1, exc)

    async def _run_batch(self, batch_index: int, texts: list[str], nodes: Sequence[Node]) -> list[SentimentResult]:
        content = await self._request(batch_index, self.build_payload(texts, nodes))
        if content is None:
            return [fallback_result(t, nodes) for t in texts]
        try:
            items = parse_analysis_items(content, len(texts))
        except MalformedResponseError as exc:
            logger.warning("Batch %d response unusable (%s); emitting fallback records", batch_index + 1, exc)
            return [fallback_result(t, nodes) for t in texts]

        out: list[SentimentResult] = []
        for text, item in zip(texts, items):
            result = result_from_item(text, item, nodes)
            out.append(result if result is not None else fallback_result(text, nodes))
        missing = sum(1 for r in out if r.is_fallback)
        if missing:
            logger.warning("Batch %d: %d of %d item(s) replaced by fallback records", batch_index + 1, missing, len(texts))
        return out

    async def analyze(
        self,
        texts: Sequence[str],
        nodes: Sequence[Node],
        on_progress: ProgressCallback | None = None,
        on_status: StatusCallback | None = None,
        timeout_sec: float | None = None,
    ) -> AnalysisRun:
        items = [str(t or "") for t in texts]
        run_nodes = validate_nodes(nodes)
        started = time.perf_counter()
        reporter = ProgressReporter(len(items), on_progress=on_progress, on_status=on_status)
        if not items:
            reporter.finish()
            return AnalysisRun(results=[], total=0, processed=0)

        batches = [items[s : s + self.batch_size] for s in range(0, len(items), self.batch_size)]
        total_batches = len(batches)
        logger.info("Starting remote analysis: %d texts in %d batches", len(items), total_batches)

        loop = asyncio.get_running_loop()
        timeout = timeout_sec if timeout_sec is not None else self.run_timeout_sec
        deadline = loop.time() + timeout if timeout else None

        collected: dict[int, list[SentimentResult]] = {}
        abort: RemoteServiceError | None = None
        for group_start in range(0, total_batches, self.parallel_batches):
            group = list(range(group_start, min(group_start + self.parallel_batches, total_batches)))
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                abort = RemoteTimeoutError("run deadline exceeded")
                break

            reporter.status(f"Analyzing batches {group[0] + 1}-{group[-1] + 1} of {total_batches}")
            tasks = {idx: asyncio.create_task(self._run_batch(idx, batches[idx], run_nodes)) for idx in group}
            _, pending = await asyncio.wait(tasks.values(), timeout=remaining)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                abort = RemoteTimeoutError("run deadline exceeded")

            for idx, task in tasks.items():
                if task in pending:
                    continue
                exc = task.exception()
                if exc is None:
                    collected[idx] = task.result()
                elif isinstance(exc, (RateLimitError, QuotaExhaustedError, RemoteTimeoutError)):
                    if abort is None:
                        abort = exc
                else:
                    logger.error("Batch %d failed (%s: %s); emitting fallback records", idx + 1, exc.__class__.__name__, exc)
                    collected[idx] = [fallback_result(t, run_nodes) for t in batches[idx]]

            reporter.advance(sum(len(r) for r in collected.values()))
            if abort is not None:
                break

        results: list[SentimentResult] = []
        for idx, batch in enumerate(batches):
            results.extend(collected.get(idx) or [fallback_result(t, run_nodes) for t in batch])

        processed = sum(len(r) for r in collected.values())
        run = AnalysisRun(
            results=results,
            total=len(items),
            processed=processed,
            failed=sum(1 for r in collected.values() for x in r if x.is_fallback),
            elapsed_sec=time.perf_counter() - started,
        )
        if abort is not None:
            run.partial = True
            run.abort_reason = abort.reason
            run.advisory = ABORT_ADVISORIES.get(abort.reason)
            run.warnings.append(f"{abort.reason}: {abort}")
            logger.warning(
                "Remote analysis aborted (%s) after %d of %d texts", abort.reason, processed, len(items)
            )
            reporter.status(f"Stopped early ({abort.reason}): {processed} of {len(items)} texts analyzed")
        else:
            reporter.finish()
            reporter.status(f"Analysis complete: {processed} texts analyzed")
        return run
