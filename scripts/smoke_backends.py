# scripts/smoke_backends.py
import asyncio
import os
from pathlib import Path

from dotenv import load_dotenv

# Resolve .env relative to the repo root so this script works from any cwd.
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

from providergateway.config import Settings  # noqa: E402
from providergateway.errors import ProviderError  # noqa: E402
from providergateway.gateway import Gateway  # noqa: E402
from providergateway.models import GenerateRequest  # noqa: E402
from providergateway.observability import configure_logging, configure_tracing  # noqa: E402

BACKENDS_TO_TEST = [
    {"name": "Claude (native streaming)", "backend": "claude", "required_env": "ANTHROPIC_API_KEY"},
    {"name": "Gemini (simulated streaming)", "backend": "gemini", "required_env": "GEMINI_API_KEY"},
    {"name": "LiteLLM", "backend": "litellm", "required_env": "LITELLM_MODEL"},
    {"name": "Mock", "backend": "mock", "required_env": None},
]


async def smoke_backend(gateway: Gateway, backend_info: dict):
    """Stream one short answer from a single backend"""

    required = backend_info["required_env"]
    if required and not os.getenv(required):
        print(f"⏭️  Skipping {backend_info['name']} (no {required})")
        return

    print(f"\n🧪 Testing {backend_info['name']}...")

    request = GenerateRequest(
        messages=[{"role": "user", "content": "Say 'Hello from the gateway!' in one sentence."}],
        temperature=0.7,
        max_tokens=50,
    )

    try:
        print("   Response: ", end="")
        stream = await gateway.generate_response_stream(request, backend=backend_info["backend"])
        async for event in stream:
            if event.content_delta:
                print(event.content_delta, end="", flush=True)
            if event.tokens_used:
                print(f"\n   Tokens: {event.tokens_used}")
            if event.error:
                print(f"\n   ❌ Stream error: {event.error}")
                return
        print(f"\n   ✅ {backend_info['name']} working!")

    except ProviderError as e:
        print(f"\n   ❌ Error: {e.kind.value}: {e.message}")


async def main():
    print("=" * 60)
    print("Backend Smoke Test")
    print("=" * 60)

    settings = Settings(enable_mock_backend=True)
    configure_logging(settings.log_level)
    tracer_provider = configure_tracing(settings)

    async with Gateway.from_settings(settings) as gateway:
        for backend_info in BACKENDS_TO_TEST:
            await smoke_backend(gateway, backend_info)

        print("\n" + "-" * 60)
        for name, stats in (await gateway.get_usage_stats()).items():
            print(f"{name:>8}: {stats.total_requests} requests, {stats.total_tokens} tokens")

    print("\n" + "=" * 60)
    print("Testing complete!")
    print("=" * 60)
    tracer_provider.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
