"""Tool calling against Gemini's OpenAI-compatible endpoint.

Demonstrates:
- Routing the OpenAI SDK through a patched transport
- Sanitized tool schemas (``const`` and ``$schema`` would be rejected)
- Reassembling streamed tool calls with provider.collect()
- Thought-signature round trips keyed by a per-conversation session id

Usage:
    uv run --env-file=.env examples/gemini_weather_example.py --model gemini/gemini-3-pro-preview
    uv run examples/gemini_weather_example.py --model gemini/gemini-3-pro-preview --trace
"""

import argparse
import asyncio
import os
import uuid

from toolpatch.provider import OpenAICompatibleProvider, parse_provider_model_string

BASE_URLS = {
    "gemini": "https://generativelanguage.googleapis.com/v1beta/openai",
}

WEATHER_TOOL = {
    "type": "function",
    "function": {
        "name": "get_weather",
        "description": "Current weather for a city.",
        "parameters": {
            "$schema": "http://json-schema.org/draft-07/schema#",
            "type": "object",
            "properties": {
                "city": {"type": "string"},
                "unit": {"const": "celsius"},
            },
            "required": ["city"],
        },
    },
}

FAKE_WEATHER = {"paris": 18, "rome": 24, "oslo": 7}


def get_weather(city: str, unit: str = "celsius") -> str:
    temp = FAKE_WEATHER.get(city.lower())
    if temp is None:
        return f"No data for {city}."
    return f"{temp} degrees {unit} in {city}."


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        SimpleSpanProcessor, ConsoleSpanExporter,
    )
    from toolpatch.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


async def run_turn(provider, model, messages, session_id):
    """Stream one assistant turn; run any tool calls it asks for."""
    result = await provider.collect(
        model, messages, tools=[WEATHER_TOOL], session_id=session_id,
    )
    if not result.tool_calls:
        return result.content

    messages.append(result.assistant_message())
    for tc in result.tool_calls:
        args = tc.parsed_arguments()
        print(f"  -> {tc.name}({args})")
        messages.append({
            "role": "tool",
            "tool_call_id": tc.id,
            "content": get_weather(**args),
        })
    return await run_turn(provider, model, messages, session_id)


async def main():
    parser = argparse.ArgumentParser(description="Gemini weather agent")
    parser.add_argument("--model", default="gemini/gemini-3-pro-preview")
    parser.add_argument("--filter-empty-chunks", action="store_true")
    parser.add_argument("--trace", action="store_true")
    args = parser.parse_args()

    if args.trace:
        setup_tracing("gemini-weather")

    target = parse_provider_model_string(args.model)
    if target.provider not in BASE_URLS:
        raise SystemExit(f"Unknown provider: {target.provider}")

    provider = OpenAICompatibleProvider(
        BASE_URLS[target.provider],
        api_key=os.getenv("GEMINI_API_KEY"),
        compatibility={
            "handle_thought_signature": True,
            "filter_empty_chunks": args.filter_empty_chunks,
        },
    )
    session_id = str(uuid.uuid4())
    messages = []

    print("Weather Assistant\n")

    try:
        while True:
            try:
                user_input = input("You: ")
            except (KeyboardInterrupt, EOFError):
                print("\nGoodbye!")
                break

            messages.append({"role": "user", "content": user_input})
            reply = await run_turn(provider, target.model, messages, session_id)
            messages.append({"role": "assistant", "content": reply})
            print(f"Assistant: {reply}\n")
    finally:
        provider.evict_session(session_id)
        await provider.aclose()


if __name__ == "__main__":
    asyncio.run(main())
