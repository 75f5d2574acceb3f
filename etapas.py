# -*- coding: utf-8 -*-
"""Catálogo fixo das etapas de um carregamento.

Cada etapa sabe quais colunas da tabela ``carregamentos`` lê/grava. O resto do
código acessa os campos de etapa SOMENTE por esta tabela (nada de montar nome
de coluna com string solta).
"""
from __future__ import annotations

import os
from typing import Any, Dict, NamedTuple, Optional, Tuple

TOTAL_ETAPAS = 6
ETAPA_DOCUMENTACAO = 5
ETAPA_FINAL = 6

# Tipos de anexo
ANEXO_IMAGEM = "imagem"
ANEXO_DOCUMENTO = "documento"   # PDF da nota fiscal
ANEXO_XML = "xml"               # cópia estruturada (opcional, etapa 5)

_EXT_IMAGEM = {"png", "jpg", "jpeg", "gif", "webp", "bmp", "heic"}


class Etapa(NamedTuple):
    ordem: int
    nome: str
    tipo_anexo: Optional[str]
    campo_data: Optional[str] = None
    campo_obs: Optional[str] = None
    campo_url: Optional[str] = None
    campo_url_secundaria: Optional[str] = None

    @property
    def requer_documento(self) -> bool:
        return self.tipo_anexo == ANEXO_DOCUMENTO

    @property
    def terminal(self) -> bool:
        return self.ordem == ETAPA_FINAL


ETAPAS: Tuple[Etapa, ...] = (
    Etapa(1, "Chegada", ANEXO_IMAGEM, "data_chegada", "observacao_chegada", "url_chegada"),
    Etapa(2, "Início Carregamento", ANEXO_IMAGEM, "data_inicio_carregamento", "observacao_inicio", "url_inicio"),
    Etapa(3, "Carregando", ANEXO_IMAGEM, "data_carregando", "observacao_carregando", "url_carregando"),
    Etapa(4, "Carreg. Finalizado", ANEXO_IMAGEM, "data_finalizacao", "observacao_finalizacao", "url_finalizacao"),
    Etapa(5, "Documentação", ANEXO_DOCUMENTO, "data_nf", "observacao_nf", "url_nota_fiscal", "url_xml"),
    Etapa(6, "Finalizado", None),
)

_POR_ORDEM: Dict[int, Etapa] = {e.ordem: e for e in ETAPAS}

# Etapas com dados próprios (1..5)
ETAPAS_COM_DADOS: Tuple[Etapa, ...] = tuple(e for e in ETAPAS if e.campo_data)


def get_etapa(ordem: int) -> Etapa:
    """Retorna a etapa pelo número (1..6). KeyError fora do intervalo."""
    return _POR_ORDEM[ordem]


def etapa_valida(ordem: Any) -> bool:
    return isinstance(ordem, int) and not isinstance(ordem, bool) and ordem in _POR_ORDEM


def colunas_etapas() -> Tuple[str, ...]:
    """Todas as colunas de etapa, na ordem do catálogo (usado pelo schema e pelos SELECTs)."""
    cols = []
    for e in ETAPAS_COM_DADOS:
        cols.extend([e.campo_data, e.campo_obs, e.campo_url])
        if e.campo_url_secundaria:
            cols.append(e.campo_url_secundaria)
    return tuple(cols)


# ==========================
# Classificação de anexos
# ==========================
def _extensao(nome: Optional[str]) -> str:
    _, ext = os.path.splitext(nome or "")
    return ext.lstrip(".").lower()


def classificar_anexo(nome: Optional[str], content_type: Optional[str] = None) -> Optional[str]:
    """Devolve ANEXO_IMAGEM / ANEXO_DOCUMENTO / ANEXO_XML ou None se não reconhecido.

    A extensão manda; o mimetype só é usado quando o nome não tem extensão.
    """
    ext = _extensao(nome)
    ct = (content_type or "").split(";")[0].strip().lower()
    if ext:
        if ext in _EXT_IMAGEM:
            return ANEXO_IMAGEM
        if ext == "pdf":
            return ANEXO_DOCUMENTO
        if ext == "xml":
            return ANEXO_XML
        return None
    if ct.startswith("image/"):
        return ANEXO_IMAGEM
    if ct == "application/pdf":
        return ANEXO_DOCUMENTO
    if ct in ("application/xml", "text/xml"):
        return ANEXO_XML
    return None


def status_para_etapa(etapa_atual: int) -> str:
    # 0 -> awaiting; 1..5 -> in_progress; 6 -> finalized
    if etapa_atual <= 0:
        return "awaiting"
    if etapa_atual >= ETAPA_FINAL:
        return "finalized"
    return "in_progress"


def dados_da_etapa(registro: Dict[str, Any], etapa: Etapa) -> Dict[str, Any]:
    """Extrai {timestamp, observation, attachmentUrl[, secondaryAttachmentUrl]} de uma linha."""
    out = {
        "timestamp": registro.get(etapa.campo_data),
        "observation": registro.get(etapa.campo_obs),
        "attachmentUrl": registro.get(etapa.campo_url),
    }
    if etapa.campo_url_secundaria:
        out["secondaryAttachmentUrl"] = registro.get(etapa.campo_url_secundaria)
    return out
