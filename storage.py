# -*- coding: utf-8 -*-
"""Armazenamento dos anexos das etapas.

Contrato usado pelo fluxo: ``upload(conteudo: bytes, destino: str) -> url``.
Qualquer falha vira StorageFailure (o fluxo não grava nada nesse caso).
"""
from __future__ import annotations

import logging
import os
import uuid

from werkzeug.utils import secure_filename

logger = logging.getLogger(__name__)


class StorageFailure(Exception):
    pass


class ArmazenamentoLocal:
    """Grava em disco sob ``pasta`` e devolve URL servida por /uploads/<chave>."""

    def __init__(self, pasta: str, url_base: str = "/uploads"):
        self.pasta = pasta
        self.url_base = url_base.rstrip("/")

    def _chave(self, destino: str) -> str:
        # destino vem como "carregamentos/12/etapa_1/foto.jpg"; cada parte é sanitizada
        partes = [secure_filename(p) for p in (destino or "").replace("\\", "/").split("/")]
        partes = [p for p in partes if p]
        if not partes:
            raise StorageFailure("destino inválido para upload")
        # prefixo aleatório evita sobrescrever anexo órfão de tentativa anterior
        partes[-1] = f"{uuid.uuid4().hex[:8]}_{partes[-1]}"
        return "/".join(partes)

    def caminho(self, chave: str) -> str:
        return os.path.join(self.pasta, *chave.split("/"))

    def upload(self, conteudo: bytes, destino: str) -> str:
        if not conteudo:
            raise StorageFailure("arquivo vazio")
        chave = self._chave(destino)
        path = self.caminho(chave)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as fh:
                fh.write(conteudo)
        except OSError as e:
            logger.error("Falha ao gravar anexo %s: %s", chave, e)
            raise StorageFailure(str(e)) from e
        logger.info("Anexo gravado: %s (%d bytes)", chave, len(conteudo))
        return f"{self.url_base}/{chave}"
