"""Helm-sync refresh action."""

import logging
import pathlib
from argparse import (
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
)
import sys
from typing import Any, cast

import aiofiles.os

from helm_sync.exceptions import InputException
from helm_sync.manifest import write_state

from . import common
from .format import print_messages


_LOGGER = logging.getLogger(__name__)


class RefreshAction:
    """Update the stored state of a release from the cluster."""

    @classmethod
    def register(
        cls,
        subparsers: SubParsersAction,  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "refresh",
                help="Refresh the stored state of a release and report drift",
                description=(
                    "Read the live release, report changes made outside of "
                    "helm-sync and write the refreshed state. The state file is "
                    "removed if the release no longer exists."
                ),
            ),
        )
        common.add_state_flag(args, required=True)
        common.add_helm_flags(args)
        args.add_argument(
            "--exit-code",
            action="store_true",
            help="Exit with a non-zero status when drift is detected",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(
        self,
        state_file: pathlib.Path,
        exit_code: bool = False,
        **kwargs: Any,
    ) -> None:
        """Async Action implementation."""
        state = await common.read_optional_state(state_file)
        if state is None:
            raise InputException(f"State file {state_file} does not exist")
        lifecycle = common.build_lifecycle(**kwargs)
        result = await lifecycle.read(state)
        if result is None:
            print(
                f"Release {state.spec.namespaced_name} no longer exists, "
                f"removing {state_file}"
            )
            await aiofiles.os.remove(state_file)
            return
        print_messages("Warnings", result.warnings)
        print_messages("Drift", result.drift)
        await write_state(state_file, result.state)
        common.print_status(result.state)
        if result.drift and exit_code:
            sys.exit(2)
