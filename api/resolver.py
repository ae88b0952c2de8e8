"""
Map a catalog track onto a concrete YouTube video.

Two strategies are available. Without an AI credential the top hit of a single
"<artist> <title>" search is used. With one, a chat model is given a
youtubeSearch tool and a limited number of searches, and must answer with a
JSON verdict naming the video it picked.

resolve_youtube_track never raises: every problem comes back as a failed
ResolutionResult, and every step is reported through the on_log callback.
"""

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Callable

import requests

import youtube
from errors import (
    ConfigError,
    MissingVideoIdError,
    NoResultsError,
    ResolutionError,
    TurnBudgetExceededError,
    UnparseableResponseError,
)
from models import ResolutionResult, Track
from youtube import SearchFilters, build_track_query

logger = logging.getLogger(__name__)

AI_PROVIDER = os.environ.get("AI_PROVIDER", "openai")
AI_API_KEY = os.environ.get("AI_API_KEY") or os.environ.get("OPENAI_API_KEY", "")
AI_MODEL = os.environ.get("AI_MODEL", "gpt-4o-mini")
AI_BASE_URL = os.environ.get("AI_BASE_URL", "https://api.openai.com/v1")
AI_TIMEOUT_S = float(os.environ.get("AI_TIMEOUT_S", "60"))
AI_YT_MAX_ATTEMPTS = int(os.environ.get("AI_YT_MAX_ATTEMPTS", "3"))
AI_YT_SYSTEM_PROMPT = os.environ.get("AI_YT_SYSTEM_PROMPT", "")

SEARCH_TOOL_NAME = "youtubeSearch"
# Turns allowed on top of the search budget for answers that are not tool calls.
EXTRA_TURNS = 3

DEFAULT_SYSTEM_PROMPT = " ".join(
    [
        "You are an assistant that maps Spotify tracks to the exact YouTube video that best represents the same song.",
        f"You may call the {SEARCH_TOOL_NAME} tool up to the configured limit to inspect results.",
        "Only return a success when you are confident the audio and artist match the Spotify metadata.",
        "If you only find lyric videos and have used up your search attempts, pick the best lyric video available.",
        "When you respond, output valid JSON with the following shape and nothing else:",
        "{",
        '  "status": "success" | "failure",',
        '  "videoId": "YouTube video id or null",',
        '  "reason": "Why you chose the video or why matching failed.",',
        '  "error": "null or a short machine friendly error message"',
        "}",
        'If you cannot find a trustworthy match, respond with status "failure", videoId null, and a concise error summary.',
    ]
)

SEARCH_TOOL = {
    "type": "function",
    "function": {
        "name": SEARCH_TOOL_NAME,
        "description": (
            "Search YouTube for potential matches. Provide precise queries and optional filters to steer the results."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Search string that should include artist names, song title, and any disambiguating context.",
                },
                "maxResults": {
                    "type": "integer",
                    "minimum": 1,
                    "maximum": 10,
                    "description": "How many candidates to return (default comes from server config).",
                },
                "order": {
                    "type": "string",
                    "enum": list(youtube.SEARCH_ORDERS),
                    "description": "Change ranking strategy when relevance fails.",
                },
                "videoDuration": {
                    "type": "string",
                    "enum": list(youtube.VIDEO_DURATIONS),
                    "description": "Filter by video duration (YouTube buckets).",
                },
                "publishedAfter": {
                    "type": "string",
                    "description": "ISO8601 timestamp to avoid older uploads when looking for a new release.",
                },
                "channelId": {
                    "type": "string",
                    "description": "Restrict results to a specific channel if needed.",
                },
            },
            "required": ["query"],
        },
    },
}

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


# -- conversation turns -------------------------------------------------------


@dataclass
class AssistantText:
    content: str

    def to_message(self) -> dict:
        return {"role": "assistant", "content": self.content}


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict = field(default_factory=dict)
    raw_arguments: str = "{}"

    def to_message_part(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.raw_arguments},
        }


@dataclass
class ToolObservation:
    call_id: str
    payload: dict

    def to_message(self) -> dict:
        return {"role": "tool", "tool_call_id": self.call_id, "content": json.dumps(self.payload)}


AssistantTurn = AssistantText | list[ToolCall]


@dataclass
class Verdict:
    status: str
    video_id: str | None
    reason: str
    error: str | None


def extract_json(text) -> object | None:
    """Pull a JSON value out of model output: bare, fenced, or embedded in prose."""
    if not text or not isinstance(text, str):
        return None
    trimmed = text.strip()
    if not trimmed:
        return None
    fenced = _FENCE_RE.search(trimmed)
    candidate = fenced.group(1).strip() if fenced else trimmed
    try:
        return json.loads(candidate)
    except ValueError:
        pass
    first, last = candidate.find("{"), candidate.rfind("}")
    if first == -1 or last <= first:
        return None
    try:
        return json.loads(candidate[first : last + 1])
    except ValueError:
        return None


def parse_verdict(text) -> Verdict | None:
    data = extract_json(text)
    if not isinstance(data, dict):
        return None
    return Verdict(
        status="success" if data.get("status") == "success" else "failure",
        video_id=data.get("videoId") or data.get("video_id") or None,
        reason=data.get("reason") or data.get("notes") or "",
        error=data.get("error") or None,
    )


# -- chat client --------------------------------------------------------------


class ChatClient:
    """Minimal OpenAI-compatible chat-completions client with tool calling."""

    def __init__(self, api_key: str, model: str, base_url: str = AI_BASE_URL, timeout: float = AI_TIMEOUT_S):
        self.api_key = api_key
        self.model = model
        self.endpoint = f"{base_url.rstrip('/')}/chat/completions"
        self.timeout = timeout
        self.session = requests.Session()

    def complete(self, messages: list[dict], tools: list[dict]) -> AssistantTurn:
        resp = self.session.post(
            self.endpoint,
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
            json={
                "model": self.model,
                "temperature": 1,
                "messages": messages,
                "tools": tools,
                "tool_choice": "auto",
            },
            timeout=self.timeout,
        )
        resp.raise_for_status()
        choices = resp.json().get("choices") or []
        if not choices:
            raise ValueError("AI response did not include any choices")
        message = choices[0].get("message") or {}

        calls = []
        for raw in message.get("tool_calls") or []:
            fn = raw.get("function") or {}
            raw_args = fn.get("arguments") or "{}"
            args = extract_json(raw_args)
            calls.append(
                ToolCall(
                    id=raw.get("id", ""),
                    name=fn.get("name", ""),
                    arguments=args if isinstance(args, dict) else {},
                    raw_arguments=raw_args,
                )
            )
        if calls:
            return calls
        return AssistantText(message.get("content") or "")


_client_cache: dict[tuple, ChatClient] = {}


def get_chat_client() -> ChatClient:
    if not AI_API_KEY:
        raise ConfigError("AI provider API key missing. Set AI_API_KEY or OPENAI_API_KEY.")
    if AI_PROVIDER.lower() != "openai":
        raise ConfigError(f'Unsupported AI provider "{AI_PROVIDER}". Only "openai" is supported right now.')
    key = (AI_API_KEY, AI_MODEL, AI_BASE_URL)
    if key not in _client_cache:
        _client_cache[key] = ChatClient(AI_API_KEY, AI_MODEL, AI_BASE_URL)
    return _client_cache[key]


# -- resolution ---------------------------------------------------------------


def describe_track_for_prompt(track: Track, max_attempts: int) -> str:
    payload = {
        "title": track.name,
        "artists": track.artists or [],
        "album": track.album,
        "releaseDate": track.release_date,
        "durationMs": track.duration_ms,
        "explicit": bool(track.explicit),
    }
    return "\n".join(
        [
            "Identify a single YouTube video that matches this Spotify track. Avoid lyric videos, live versions, "
            "covers, interviews, or uploads from unrelated channels unless explicitly requested:",
            json.dumps(payload, indent=2),
            f"You may call {SEARCH_TOOL_NAME} up to {max_attempts} times.",
        ]
    )


def _filters_from_args(args: dict) -> SearchFilters:
    try:
        max_results = int(args["maxResults"]) if args.get("maxResults") else None
    except (TypeError, ValueError):
        max_results = None
    return SearchFilters(
        max_results=max_results,
        order=args.get("order"),
        video_duration=args.get("videoDuration"),
        published_after=args.get("publishedAfter"),
        channel_id=args.get("channelId"),
    )


class AgentResolver:
    """One bounded tool-calling negotiation for a single track."""

    def __init__(self, client, search: Callable[..., dict], max_attempts: int, log: Callable[[str], None]):
        self.client = client
        self.search = search
        self.max_attempts = max(1, max_attempts)
        self.max_turns = self.max_attempts + EXTRA_TURNS
        self.log = log
        self.attempts = 0

    async def resolve(self, track: Track) -> ResolutionResult:
        try:
            return await self._negotiate(track)
        except ResolutionError as e:
            self.log(f"AI workflow failed: {e}")
            return ResolutionResult.failure(self.attempts, e.reason, str(e))
        except Exception as e:
            self.log(f"AI workflow error: {e or 'Unknown error'}")
            logger.warning(f"AI resolution for track {track.id} failed: {e}")
            return ResolutionResult.failure(self.attempts, "LLM workflow failed", str(e) or "Unknown AI search error")

    async def _negotiate(self, track: Track) -> ResolutionResult:
        system_prompt = AI_YT_SYSTEM_PROMPT.strip() or DEFAULT_SYSTEM_PROMPT
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": describe_track_for_prompt(track, self.max_attempts)},
        ]
        tools = [SEARCH_TOOL]
        self.log(f"AI resolver started (max {self.max_attempts} {SEARCH_TOOL_NAME} calls).")

        for _ in range(self.max_turns):
            turn = await asyncio.to_thread(self.client.complete, messages, tools)
            if isinstance(turn, AssistantText):
                messages.append(turn.to_message())
                return self._conclude(turn)

            messages.append({"role": "assistant", "content": None, "tool_calls": [c.to_message_part() for c in turn]})
            for call in turn:
                observation = await self._observe(call)
                messages.append(observation.to_message())

        raise TurnBudgetExceededError("AI workflow exceeded allowed number of turns")

    async def _observe(self, call: ToolCall) -> ToolObservation:
        if call.name != SEARCH_TOOL_NAME:
            self.log(f"AI requested unknown tool {call.name!r}.")
            return ToolObservation(call.id, {"error": f"Unknown tool {call.name}"})

        if self.attempts >= self.max_attempts:
            self.log(f"AI requested {SEARCH_TOOL_NAME} but limit ({self.max_attempts}) already reached.")
            return ToolObservation(
                call.id,
                {"attempt": self.attempts, "error": f"Search attempt limit ({self.max_attempts}) reached"},
            )

        query = str(call.arguments.get("query") or "").strip()
        if not query:
            self.log(f"AI attempted {SEARCH_TOOL_NAME} without a query string.")
            return ToolObservation(
                call.id,
                {
                    "attempt": self.attempts + 1,
                    "error": f"{SEARCH_TOOL_NAME} requires a non-empty query string",
                    "results": [],
                },
            )

        self.attempts += 1
        label = f"Attempt {self.attempts}/{self.max_attempts}"
        filters = _filters_from_args(call.arguments)
        self.log(f'{label}: {SEARCH_TOOL_NAME} for "{query}"{filters.describe()}.')

        payload = await asyncio.to_thread(self.search, query, filters)
        results = payload.get("results") or []
        if payload.get("error"):
            self.log(f"{label} error: {payload['error']}")
        elif results:
            top = results[0]
            self.log(f'{label}: {len(results)} result(s), top "{top["title"]}" ({top["videoId"]}).')
        else:
            self.log(f"{label}: no results returned.")

        return ToolObservation(call.id, {"attempt": self.attempts, "query": query, **payload})

    def _conclude(self, turn: AssistantText) -> ResolutionResult:
        verdict = parse_verdict(turn.content)
        if verdict is None:
            self.log("AI response could not be parsed as JSON.")
            raise UnparseableResponseError("AI response could not be parsed as JSON")

        if verdict.status == "success" and not verdict.video_id:
            self.log("AI returned status=success but no videoId.")
            detail = f": {verdict.reason}" if verdict.reason else ""
            raise MissingVideoIdError(f"Missing video id in AI result{detail}")

        if verdict.status == "success":
            note = f" - {verdict.reason}" if verdict.reason else ""
            self.log(f"AI selected video {verdict.video_id}{note}")
            return ResolutionResult.success(verdict.video_id, self.attempts, verdict.reason)

        note = f" - {verdict.reason}" if verdict.reason else ""
        self.log(f"AI failed to match track{note}")
        return ResolutionResult.failure(self.attempts, verdict.reason or "AI could not find a match", verdict.error)


async def fallback_simple_search(
    track: Track,
    log: Callable[[str], None],
    search: Callable[..., dict] | None = None,
) -> ResolutionResult:
    search = search or youtube.search_payload
    query = build_track_query(track)
    if not query:
        return ResolutionResult.failure(
            0, "Cannot build YouTube query from track metadata", "Missing artist or track name"
        )

    log(f'Fallback simple YouTube search for "{query}".')
    payload = await asyncio.to_thread(search, query, SearchFilters())
    results = payload.get("results") or []
    if not results:
        log(f"Fallback search found no results. Error: {payload.get('error') or 'none'}.")
        raise NoResultsError(payload.get("error") or "No YouTube results", reason=f'No YouTube results for "{query}"')

    first = results[0]
    log(f'Fallback search picked "{first["title"]}" ({first["videoId"]}).')
    return ResolutionResult.success(
        first["videoId"],
        1,
        f'Selected top YouTube hit for "{query}"',
        details={"title": first["title"], "channelTitle": first["channelTitle"]},
    )


async def resolve_youtube_track(
    track: Track,
    on_log: Callable[[str], None] | None = None,
    client=None,
    search: Callable[..., dict] | None = None,
    max_attempts: int | None = None,
) -> ResolutionResult:
    """Find the YouTube video for a track. Never raises."""
    log = on_log or (lambda message: None)
    search = search or youtube.search_payload

    if client is None:
        if not AI_API_KEY:
            log("AI configuration missing. Falling back to simple YouTube search.")
            logger.warning("AI configuration missing. Falling back to simple YouTube search.")
            try:
                return await fallback_simple_search(track, log, search)
            except ResolutionError as e:
                return ResolutionResult.failure(0, e.reason, str(e))
            except Exception as e:
                log(f"Fallback search error: {e}")
                return ResolutionResult.failure(0, "Fallback search failed", str(e))
        try:
            client = get_chat_client()
        except ConfigError as e:
            log(f"AI workflow error: {e}")
            return ResolutionResult.failure(0, "LLM workflow failed", str(e))

    agent = AgentResolver(client, search, max_attempts or AI_YT_MAX_ATTEMPTS, log)
    return await agent.resolve(track)
