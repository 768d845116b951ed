import asyncio
import sys

from dotenv import load_dotenv
from loguru import logger

from store_assistant.app_config import load_json_config, parse_app_config, resolve_runtime_env
from store_assistant.bootstrap import bootstrap_runtime
from store_assistant.repl import ReplSession


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    env = resolve_runtime_env(app.provider_name)
    if not env.provider_api_key:
        logger.error(f"{env.provider_env_var} environment variable is required.")
        sys.exit(1)

    runtime = bootstrap_runtime(app, env)
    session = ReplSession(
        runtime.orchestrator,
        user_id=app.user_id,
        repository=runtime.repository,
        max_client_history=app.limits.max_client_history,
    )

    print("store-assistant (gõ 'exit' để thoát, '/help' để xem lệnh)")
    print(f"Model: {app.model} ({app.provider_name})")
    if runtime.tools:
        print("Tools:")
        for t in runtime.tools:
            print(f"  - {t.name} ({t.name.display_name})")
    else:
        print("Tools: none (set STORE_API_BASE_URL to enable store lookups)")
    print(f"Memory: {'enabled' if runtime.repository else 'disabled'}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    try:
        while True:
            try:
                user_input = input("bạn> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()

            if trimmed in ("exit", "quit"):
                break

            if not trimmed:
                continue

            try:
                if await session.try_handle_command(trimmed):
                    continue
                print()
                await session.send_interruptible(trimmed)
            except Exception as ex:
                logger.error(f"Unhandled error: {ex}")
    finally:
        await runtime.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
