"""Helm-sync values action."""

import logging
import pathlib
from argparse import (
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
)
from dataclasses import replace
from typing import Any, cast

from helm_sync.manifest import REDACTED, SetValue
from helm_sync.values import merge_release_values

from . import common
from .format import print_yaml


_LOGGER = logging.getLogger(__name__)


class ValuesAction:
    """Print the values that would be passed to helm."""

    @classmethod
    def register(
        cls,
        subparsers: SubParsersAction,  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "values",
                help="Print the merged values of a release",
                description=(
                    "Merge the values document and the set, set_list and "
                    "set_sensitive overrides of a release and print the result. "
                    "Chart defaults are not included."
                ),
            ),
        )
        common.add_release_flag(args)
        args.add_argument(
            "--show-sensitive",
            action="store_true",
            help="Print set_sensitive values instead of hiding them",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(
        self,
        release_file: pathlib.Path,
        show_sensitive: bool = False,
        **kwargs: Any,
    ) -> None:
        """Async Action implementation."""
        spec = await common.read_spec(release_file)
        if not show_sensitive:
            spec = replace(
                spec,
                set_sensitive=[
                    SetValue(name=item.name, value=REDACTED)
                    for item in spec.set_sensitive
                ],
            )
        print_yaml(merge_release_values(spec))
