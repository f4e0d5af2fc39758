"""Helm-sync destroy action."""

import logging
import pathlib
from argparse import (
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
)
from typing import Any, cast

import aiofiles.os

from helm_sync.exceptions import InputException

from . import common


_LOGGER = logging.getLogger(__name__)


class DestroyAction:
    """Uninstall a tracked release."""

    @classmethod
    def register(
        cls,
        subparsers: SubParsersAction,  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "destroy",
                help="Uninstall a release",
                description=(
                    "Uninstall the release in the state file. The state file is "
                    "only removed once the release is gone."
                ),
            ),
        )
        common.add_state_flag(args, required=True)
        common.add_helm_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(
        self,
        state_file: pathlib.Path,
        **kwargs: Any,
    ) -> None:
        """Async Action implementation."""
        state = await common.read_optional_state(state_file)
        if state is None:
            raise InputException(f"State file {state_file} does not exist")
        lifecycle = common.build_lifecycle(**kwargs)
        await lifecycle.delete(state)
        await aiofiles.os.remove(state_file)
        print(f"Release {state.spec.namespaced_name} uninstalled")
