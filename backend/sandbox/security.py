"""Input validation for sandbox command execution and file access.

The sandbox container is the isolation boundary, so commands are not
allowlisted; this module only rejects malformed commands and keeps file
paths inside the sandbox working directory.
"""

import posixpath

# Control characters other than line breaks and tabs are noise for the model.
_STRIPPED_CONTROL_CHARS = {chr(c) for c in range(32)} - {"\n", "\r", "\t"}


def validate_command(command: str) -> tuple[bool, str]:
    """Validate a shell command before execution in the sandbox.

    Args:
        command: The shell command string to validate.

    Returns:
        A tuple of (is_valid, error_message).
        If valid, error_message is an empty string.

    Examples:
        >>> validate_command("npm install zod --yes")
        (True, "")
        >>> validate_command("   ")
        (False, "Command cannot be empty")
    """
    if not command or not command.strip():
        return False, "Command cannot be empty"

    # Null bytes can break shell/process behavior and should never be allowed.
    if "\x00" in command:
        return False, "Command contains null byte"

    return True, ""


def validate_path(sandbox_root: str, path: str) -> tuple[bool, str, str]:
    """Validate a file path to prevent directory traversal.

    Relative paths are resolved against the sandbox root. Absolute paths are
    accepted only when they already point inside the sandbox root, because
    agents are told the working directory and sometimes use it verbatim.

    Args:
        sandbox_root: The absolute working directory inside the container
            (e.g., "/home/user").
        path: The path the agent wants to access.

    Returns:
        A tuple of (is_valid, error_message, resolved_absolute_path).
        If invalid, resolved_absolute_path is empty.

    Examples:
        >>> validate_path("/home/user", "app/page.tsx")
        (True, "", "/home/user/app/page.tsx")
        >>> validate_path("/home/user", "/home/user/app/page.tsx")
        (True, "", "/home/user/app/page.tsx")
        >>> validate_path("/home/user", "../etc/passwd")
        (False, "Path traversal blocked: contains '..'", "")
        >>> validate_path("/home/user", "/etc/passwd")
        (False, "Path outside sandbox: /etc/passwd", "")
    """
    if not path or not path.strip():
        return False, "Path cannot be empty", ""

    if "\x00" in path:
        return False, "Path contains null byte", ""

    normalized_input = path.replace("\\", "/")

    # Reject parent traversal components while allowing safe names like
    # "file..bak" (which include ".." but not as a path component).
    if ".." in normalized_input.split("/"):
        return False, "Path traversal blocked: contains '..'", ""

    root = posixpath.normpath(sandbox_root)
    resolved = posixpath.normpath(posixpath.join(root, normalized_input))

    if resolved == root:
        return False, "Path must name a file inside the sandbox", ""
    if not resolved.startswith(root.rstrip("/") + "/"):
        return False, f"Path outside sandbox: {path}", ""

    return True, "", resolved


def sanitize_output(output: str, max_length: int = 50000) -> str:
    """Sanitize command output for safe transmission.

    Truncates excessively long output and removes control characters
    other than newlines, carriage returns and tabs.

    Args:
        output: The raw command output string.
        max_length: Maximum allowed length before truncation.

    Returns:
        The sanitized output string.
    """
    if not output:
        return ""

    output = "".join(ch for ch in output if ch not in _STRIPPED_CONTROL_CHARS)

    if len(output) > max_length:
        truncated_chars = len(output) - max_length
        output = (
            output[:max_length]
            + f"\n... [truncated, {truncated_chars} chars omitted]"
        )

    return output
