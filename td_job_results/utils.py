import urllib.parse


def format_error_message(err: BaseException):
    msg = f"{err}"
    # Fall back to the type name for exceptions with an empty message.
    if msg == "":
        msg = f"{type(err).__name__}"

    return msg


def escape_path(segment: str) -> str:
    """Escape a single URL path segment such as a job id or database name."""
    return urllib.parse.quote(str(segment), safe="")
