"""Helm-sync validate action."""

import logging
import pathlib
from argparse import (
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
)
from typing import Any, cast

from helm_sync.exceptions import InputException
from helm_sync.validation import validate_spec
from helm_sync.values import merge_release_values

from .format import print_messages
from . import common


_LOGGER = logging.getLogger(__name__)


class ValidateAction:
    """Check a release definition without contacting the cluster."""

    @classmethod
    def register(
        cls,
        subparsers: SubParsersAction,  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "validate",
                help="Validate a release definition",
                description=(
                    "Check the timeout, chart path, OCI version, registry config "
                    "and values of a release definition."
                ),
            ),
        )
        common.add_release_flag(args)
        args.set_defaults(cls=cls)
        return args

    async def run(
        self,
        release_file: pathlib.Path,
        **kwargs: Any,
    ) -> None:
        """Async Action implementation."""
        spec = await common.read_spec(release_file)
        problems = validate_spec(spec)
        try:
            merge_release_values(spec)
        except InputException as err:
            problems.append(f"Invalid Values: {err}")
        if problems:
            print_messages("Problems", problems)
            raise InputException(
                f"Release {spec.namespaced_name} has {len(problems)} problem(s)"
            )
        print(f"Release {spec.namespaced_name} is valid")
