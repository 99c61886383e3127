"""Per-invocation state shared by CLI commands."""

import logging

import click

from shipwright.config.loader import load_config
from shipwright.config.models import ShipwrightConfig
from shipwright.services import Services, build_services
from shipwright.tracking.logging_setup import setup_logging


def get_config(ctx: click.Context) -> ShipwrightConfig:
    """Load the configuration once per invocation and set up logging."""
    obj = ctx.ensure_object(dict)
    if obj.get("loaded_config") is None:
        config = load_config(obj.get("config"))
        setup_logging(config.logging, to_file=True)
        if obj.get("verbose"):
            logging.getLogger("shipwright").setLevel(logging.DEBUG)
        obj["loaded_config"] = config
    return obj["loaded_config"]


def get_services(ctx: click.Context) -> Services:
    obj = ctx.ensure_object(dict)
    if obj.get("services") is None:
        obj["services"] = build_services(get_config(ctx))
    return obj["services"]
