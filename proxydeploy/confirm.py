from typing import List

import click

from proxydeploy.constants import ZERO_ADDRESS


def _continue() -> None:
    """Asks the user to continue."""
    click.confirm("Continue?", abort=True)


def _confirm_zero_address(names: List[str]) -> None:
    click.confirm(
        f"Zero Address detected in parameters of {', '.join(names)}; Continue?", abort=True
    )


def _contains_zero_address(value) -> bool:
    if isinstance(value, (list, tuple)):
        return any(_contains_zero_address(v) for v in value)
    if isinstance(value, dict):
        return any(_contains_zero_address(v) for v in value.values())
    return value == ZERO_ADDRESS


def _confirm_resolution(planned) -> None:
    """
    Asks the user to confirm the resolved plan. Zero addresses standing in for
    components deployed earlier in the same run are expected; any other is suspicious.
    """
    suspicious = [
        item.spec.name
        for item in planned
        if not item.pending_refs and _contains_zero_address(item.args)
    ]
    _continue()
    if suspicious:
        _confirm_zero_address(suspicious)
