"""
Blocking, line-oriented terminal prompts.

Prompts and notices are written to stderr so that stdout stays clean for
output meant to be captured (e.g. ``eval $(keyless-db auth)``).
"""

import re
import sys

TOKEN_CODE_PATTERN = re.compile(r"[0-9]{6}")
MFA_SERIAL_PATTERN = re.compile(r"arn:aws[a-z-]*:iam::[0-9]{12}:mfa/[\w+=,.@/-]+")


def is_valid_token_code(value):
    """Return True for exactly six ASCII digits."""
    return bool(value) and TOKEN_CODE_PATTERN.fullmatch(value) is not None


def is_valid_mfa_serial(value):
    """Return True if value looks like an IAM MFA device ARN."""
    return bool(value) and MFA_SERIAL_PATTERN.fullmatch(value) is not None


def _ask(prompt):
    sys.stderr.write(prompt)
    sys.stderr.flush()
    return input()


def prompt_input(message, default=None):
    """
    Ask for free text.

    Args:
        message: Question shown to the operator
        default: Value returned when the answer is empty

    Returns:
        str: The stripped answer, the default, or "" when neither is set
    """
    prompt = f"{message} ({default}): " if default else f"{message}: "
    answer = _ask(prompt).strip()
    return answer or default or ""


def prompt_choice(message, choices):
    """
    Show a numbered menu and return the value of the selected entry.

    An out-of-range or non-numeric selection falls back to the first choice.

    Args:
        message: Menu title
        choices: List of (name, value) tuples, must not be empty

    Returns:
        The value of the selected choice
    """
    print(message, file=sys.stderr)
    for index, (name, _) in enumerate(choices, start=1):
        print(f"{index}. {name}", file=sys.stderr)

    answer = _ask("Select option (number): ").strip()
    try:
        index = int(answer) - 1
    except ValueError:
        index = -1

    if 0 <= index < len(choices):
        return choices[index][1]

    print("Invalid selection, using first option", file=sys.stderr)
    return choices[0][1]


def prompt_validated(message, predicate, error_message, default=None):
    """
    Ask until the answer passes predicate. There is no retry limit.

    Args:
        message: Question shown to the operator
        predicate: Callable taking the answer and returning bool
        error_message: Printed after every rejected answer
        default: Offered default, see prompt_input()

    Returns:
        str: The first accepted answer
    """
    while True:
        answer = prompt_input(message, default)
        if predicate(answer):
            return answer
        print(error_message, file=sys.stderr)


def confirm(message, default=False):
    """Ask a yes/no question."""
    hint = "Y/n" if default else "y/N"
    answer = _ask(f"{message} [{hint}]: ").strip().lower()
    if not answer:
        return default
    return answer in ("y", "yes")
