"""
列出当前 provider 可用的模型，便于挑选 AFFIRM_UPSTREAM_MODEL。

用法：
  python -m affirmgate.list_models                 # 使用 AFFIRM_* 环境变量 / .env
  python -m affirmgate.list_models --provider gemini
  python -m affirmgate.list_models -v
"""

from __future__ import annotations

import argparse
import logging
import sys

import httpx

from affirmgate.adapters.affirmation.mapper import get_provider_adapter
from affirmgate.config.settings import UpstreamCallConfig, build_upstream_config, settings

LOG = logging.getLogger("affirmgate-list-models")


def setup_log(verbose: int) -> None:
    level = logging.DEBUG if verbose > 0 else logging.INFO
    logging.basicConfig(
        format="[%(levelname)s] %(message)s",
        level=level,
        stream=sys.stdout,
    )


def fetch_models(config: UpstreamCallConfig, *, client: httpx.Client | None = None) -> list[dict[str, str]]:
    adapter = get_provider_adapter(config.provider)
    headers = adapter.build_headers(config)
    headers.pop("Accept", None)
    url = adapter.models_url(config)
    LOG.debug("GET %s", url)

    owns_client = client is None
    http_client = client or httpx.Client(timeout=config.timeout_seconds)
    try:
        response = http_client.get(url, headers=headers)
    finally:
        if owns_client:
            http_client.close()

    try:
        body = response.json()
    except ValueError:
        body = {}
    if not response.is_success:
        detail = body.get("error") if isinstance(body, dict) else None
        if isinstance(detail, dict):
            detail = detail.get("message")
        raise RuntimeError(f"list models failed status={response.status_code} detail={detail or response.text[:200]}")
    return adapter.parse_models(body)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="List models available from the configured upstream provider.")
    parser.add_argument("--provider", choices=("openai", "gemini", "gateway"), default=None, help="Override AFFIRM_PROVIDER.")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Enable debug logging.")
    args = parser.parse_args(argv)
    setup_log(args.verbose)

    source = settings.model_copy(update={"provider": args.provider}) if args.provider else settings
    config = build_upstream_config(source)
    if not config.api_key:
        LOG.error("AFFIRM_UPSTREAM_API_KEY is not configured")
        return 2

    try:
        models = fetch_models(config)
    except (httpx.HTTPError, RuntimeError) as exc:
        LOG.error("%s", exc)
        return 1

    LOG.info("Available %s models: %d", config.provider, len(models))
    for model in models:
        print(model["name"])
        print(f"   Methods: {model['methods']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
