"""Helm-sync apply action."""

import logging
import pathlib
from argparse import (
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
)
from typing import Any, cast

from helm_sync.manifest import write_state

from . import common


_LOGGER = logging.getLogger(__name__)


class ApplyAction:
    """Install or upgrade a release to match its definition."""

    @classmethod
    def register(
        cls,
        subparsers: SubParsersAction,  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "apply",
                help="Install or upgrade a release",
                description=(
                    "Install the release if there is no stored state, otherwise "
                    "upgrade it, then write the new state."
                ),
            ),
        )
        common.add_release_flag(args)
        common.add_state_flag(args, required=True)
        common.add_helm_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(
        self,
        release_file: pathlib.Path,
        state_file: pathlib.Path,
        **kwargs: Any,
    ) -> None:
        """Async Action implementation."""
        spec = await common.read_spec(release_file)
        lifecycle = common.build_lifecycle(**kwargs)
        prior = await common.read_optional_state(state_file)
        if prior is None:
            state = await lifecycle.create(spec)
        else:
            state = await lifecycle.update(spec, prior)
        await write_state(state_file, state)
        common.print_status(state)
