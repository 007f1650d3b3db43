import argparse
import json
from dataclasses import dataclass
from pathlib import Path

from carbem.config import Config
from carbem.registry import known_providers


@dataclass
class CliArgs:
    provider: "str"
    config_json: "str"
    query_json: "str"
    log_level: "str" = "info"
    metrics_textfile: "str | None" = None


def _read(
    parser: "argparse.ArgumentParser",
    value: "str | None",
    path: "str | None",
) -> "str | None":
    if path is None:
        return value
    try:
        return Path(path).read_text()
    except OSError as e:
        parser.error(f"cannot read {path}: {e.strerror}")


def _config_from_env(provider: "str", config: "Config") -> "str":
    # --from-env is a shortcut for the JSON config the env describes
    if provider == "azure":
        return json.dumps({"access_token": config.azure_access_token})
    return json.dumps(
        {"api_key": config.ibm_api_key, "enterprise_id": config.ibm_enterprise_id}
    )


def parse_args(argv: "list[str] | None" = None) -> "CliArgs":
    parser = argparse.ArgumentParser(
        prog="carbem",
        description="Query cloud provider carbon emissions as JSON",
    )
    parser.add_argument(
        "--provider",
        required=True,
        type=str.lower,
        help=f"Provider to query ({', '.join(known_providers())})",
    )

    config_group = parser.add_mutually_exclusive_group(required=True)
    config_group.add_argument("--config", help="Provider config as a JSON string")
    config_group.add_argument("--config-file", help="Path to a provider config JSON file")
    config_group.add_argument(
        "--from-env",
        action="store_true",
        help="Read provider credentials from environment variables",
    )

    query_group = parser.add_mutually_exclusive_group(required=True)
    query_group.add_argument("--query", help="Query as a JSON string")
    query_group.add_argument("--query-file", help="Path to a query JSON file")

    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--metrics.textfile",
        dest="metrics_textfile",
        default=None,
        help="Write Prometheus metrics to this file when done",
    )

    args = parser.parse_args(argv)

    if args.from_env:
        config_json = _config_from_env(args.provider, Config.from_env())
    else:
        config_json = _read(parser, args.config, args.config_file)

    return CliArgs(
        provider=args.provider,
        config_json=config_json or "",
        query_json=_read(parser, args.query, args.query_file) or "",
        log_level=args.log_level,
        metrics_textfile=args.metrics_textfile,
    )
