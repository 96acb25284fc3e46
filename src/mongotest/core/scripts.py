"""Run database shell scripts inside a container.

Scripts are not passed inline (`mongosh --eval ...`): multi-line arguments
do not survive the exec protocol's quoting reliably. Instead the script is
packed into a single-entry tar archive, uploaded to the container's `/tmp`,
and executed by path.
"""

import io
import tarfile
import time
import uuid
from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mongotest.clients.container_driver import ContainerDriver

SCRIPT_DIRECTORY = "/tmp/"


def script_filename() -> str:
    """Return a filename unlikely to collide with concurrent uploads."""
    return f"mongoScript-{uuid.uuid4().hex}.js"


def build_script_archive(filename: str, script: str) -> bytes:
    """Pack `script` into an uncompressed tar archive holding one file.

    Args:
        filename: Name of the single archive member.
        script: Script text, encoded as UTF-8.

    Returns:
        The archive bytes.
    """
    payload = script.encode("utf-8")
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        info = tarfile.TarInfo(name=filename)
        info.size = len(payload)
        info.mode = 0o777
        info.mtime = int(time.time())
        archive.addfile(info, io.BytesIO(payload))
    return buffer.getvalue()


def run_script(
    driver: "ContainerDriver",
    container_id: str,
    script: str,
    *,
    shell: str = "mongosh",
    shell_args: Sequence[str] = (),
) -> str:
    """Upload `script` into the container and execute it with `shell`.

    Args:
        driver: Container driver to use.
        container_id: Target container.
        script: Script text.
        shell: Database shell binary inside the image.
        shell_args: Extra shell arguments placed before the script path
            (connection options such as `--tls`).

    Returns:
        The exec transcript.

    Raises:
        ScriptExecError: If the upload fails, or the script exits non-zero.
    """
    filename = script_filename()
    driver.copy_archive(container_id, SCRIPT_DIRECTORY, build_script_archive(filename, script))
    return driver.exec_command(container_id, [shell, *shell_args, SCRIPT_DIRECTORY + filename])
