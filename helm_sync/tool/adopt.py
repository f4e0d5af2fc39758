"""Helm-sync import action."""

import logging
import pathlib
from argparse import (
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
)
from typing import Any, cast

from aiofiles.ospath import exists

from helm_sync.exceptions import InputException
from helm_sync.manifest import write_state

from . import common
from .format import print_messages


_LOGGER = logging.getLogger(__name__)


class ImportAction:
    """Start tracking a release that was installed outside of helm-sync."""

    @classmethod
    def register(
        cls,
        subparsers: SubParsersAction,  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "import",
                help="Import an existing release",
                description=(
                    "Import a release using the kubeconfig from $KUBECONFIG or "
                    "~/.kube/config. The id is 'context:namespace:release-name' "
                    "or 'context:release-name' for the default namespace."
                ),
            ),
        )
        args.add_argument("import_id", type=str, help="Release to import")
        common.add_state_flag(args, required=True)
        common.add_helm_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(
        self,
        import_id: str,
        state_file: pathlib.Path,
        **kwargs: Any,
    ) -> None:
        """Async Action implementation."""
        if await exists(state_file):
            raise InputException(
                f"State file {state_file} already exists, refusing to overwrite it"
            )
        lifecycle = common.build_lifecycle(**kwargs)
        result = await lifecycle.import_release(import_id)
        await write_state(state_file, result.state)
        print_messages("Warnings", result.warnings)
        common.print_status(result.state)
