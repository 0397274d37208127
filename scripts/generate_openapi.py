"""Write the relay service's OpenAPI schema for the web client's API bindings."""

import argparse
import importlib
import json
from pathlib import Path
from typing import Callable

from fastapi import FastAPI

APP_FACTORY = "services.relay_service.app.main:create_app"


def load_app(factory_path: str) -> FastAPI:
    module_path, factory_name = factory_path.split(":")
    module = importlib.import_module(module_path)
    factory: Callable[[], FastAPI] = getattr(module, factory_name)
    return factory()


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--out", default="openapi/relay-service.json", help="Target file for the schema")
    args = parser.parse_args()

    target = Path(args.out)
    target.parent.mkdir(parents=True, exist_ok=True)
    schema = load_app(APP_FACTORY).openapi()
    target.write_text(json.dumps(schema, indent=2))
    print(f"Wrote {target}")


if __name__ == "__main__":
    main()
