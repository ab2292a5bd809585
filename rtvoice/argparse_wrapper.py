#!/usr/bin/env python3
"""Wrappers for argparse functionality."""
import argparse
import contextlib
import sys
from pathlib import Path

from pydantic import BaseModel

from . import GeneralDefinitions
from .command_definitions import pipeline_chat, realtime_chat
from .configs import PipelineConfigs, RealtimeConfigs


def _populate_parser_from_pydantic_model(parser, model: BaseModel):
    _argarse2pydantic = {
        "type": model.get_type,
        "choices": model.get_allowed_values,
        "help": model.get_description,
    }

    for field_name, field in model.model_fields.items():
        with contextlib.suppress(AttributeError):
            if not field.json_schema_extra.get("changeable", True):
                continue

        args_opts = {
            key: _argarse2pydantic[key](field_name)
            for key in _argarse2pydantic
            if _argarse2pydantic[key](field_name) is not None
        }

        if args_opts.get("type") == bool:
            args_opts["action"] = argparse.BooleanOptionalAction
            args_opts.pop("type", None)

        # Unset options are left as None, so that they don't override values
        # taken from the environment or from a config file
        args_opts["default"] = None
        args_opts["required"] = field.is_required()
        if "help" in args_opts:
            model_default = model.get_default(field_name)
            if isinstance(model_default, str) and len(model_default) > 40:
                model_default = model_default[:37] + "..."
            args_opts["help"] = f"{args_opts['help']} (default: {model_default!r})"

        parser.add_argument(f"--{field_name.replace('_', '-')}", **args_opts)

    return parser


def _options_parser(model: BaseModel):
    parser = _populate_parser_from_pydantic_model(
        parser=argparse.ArgumentParser(add_help=False), model=model
    )
    parser.add_argument(
        "--config-file",
        type=Path,
        default=None,
        help="JSON file with options. Options passed on the command line take "
        "precedence over the ones in the file, which in turn take precedence over "
        "environment variables.",
    )
    return parser


def get_parsed_args(argv=None, default_command="realtime"):
    """Get parsed command line arguments.

    Args:
        argv (list): A list of passed command line args.
        default_command (str, optional): The default command to run.

    Returns:
        argparse.Namespace: Parsed command line arguments.

    """
    if argv is None:
        argv = sys.argv[1:]
    first_argv = next(iter(argv), "'")
    info_flags = ["--version", "-v", "-h", "--help"]
    if not argv or (first_argv.startswith("-") and first_argv not in info_flags):
        argv = [default_command, *argv]

    # Main parser that will handle the script's commands
    main_parser = argparse.ArgumentParser(
        description=GeneralDefinitions.PACKAGE_DESCRIPTION,
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    main_parser.add_argument(
        "--version",
        "-v",
        action="version",
        version=f"{GeneralDefinitions.PACKAGE_NAME} v" + GeneralDefinitions.VERSION,
    )
    subparsers = main_parser.add_subparsers(
        title="commands",
        dest="command",
        required=True,
        description=(
            "Valid commands (note that commands also accept their "
            + "own arguments, in particular [-h]):"
        ),
        help="command description",
    )

    # Realtime voice session
    parser_realtime = subparsers.add_parser(
        "realtime",
        aliases=["rt", "voice"],
        parents=[_options_parser(model=RealtimeConfigs)],
        help="Talk to a realtime model, streaming audio both ways.",
    )
    parser_realtime.set_defaults(run_command=realtime_chat)

    # Discrete speech-to-text -> chat -> text-to-speech pipeline
    parser_pipeline = subparsers.add_parser(
        "pipeline",
        aliases=["stt-tts"],
        parents=[_options_parser(model=PipelineConfigs)],
        help="Ask questions by voice, one at a time, using separate speech-to-text, "
        "chat and text-to-speech models.",
    )
    parser_pipeline.set_defaults(run_command=pipeline_chat)

    return main_parser.parse_args(argv)
