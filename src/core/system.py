# src/core/system.py
from __future__ import annotations
import logging
import shutil
import subprocess
from typing import List, Optional


logger = logging.getLogger(__name__)


def _which(binary: str) -> str:
    path = shutil.which(binary)
    if path is None:
        raise FileNotFoundError(f"Required tool not found in PATH: {binary}")
    return path


def run_cmd(
    cmd: List[str],
    check: bool = True,
    input: Optional[str] = None,
    timeout: Optional[float] = 30.0,
) -> subprocess.CompletedProcess:
    """
    Lance une commande système et capture sa sortie (texte).

    Lève CalledProcessError si ``check`` et code retour non nul,
    TimeoutExpired si l'outil ne répond pas dans ``timeout`` secondes.
    """
    _which(cmd[0])
    logger.debug("run: %s", " ".join(cmd))
    return subprocess.run(
        cmd,
        input=input,
        capture_output=True,
        text=True,
        check=check,
        timeout=timeout,
    )
