# -*- coding: utf-8 -*-
"""Fluxo de avanço de etapas de um carregamento.

Regras do avanço (checadas nesta ordem):
  - etapa == etapa_atual + 1            (senão OUT_OF_SEQUENCE)
  - etapa <= 5                          (senão INVALID_TARGET; a 6 é automática)
  - anexo presente e do tipo certo      (MISSING_ATTACHMENT / WRONG_ATTACHMENT_TYPE)
  - ator pode editar a etapa            (senão FORBIDDEN)
Depois: upload (falha -> STORAGE_FAILURE, nada gravado) e UM UPDATE condicional
em cima do etapa_atual lido (ninguém avançou antes -> grava; senão
CONCURRENT_MODIFICATION). Concluir a etapa 5 já finaliza o processo (etapa 6).
"""
from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, NamedTuple, Optional

from acesso import Ator, pode_editar
from etapas import (ANEXO_XML, ETAPA_DOCUMENTACAO, ETAPA_FINAL, ETAPAS_COM_DADOS,
                    classificar_anexo, dados_da_etapa, get_etapa, status_para_etapa)
from storage import StorageFailure

logger = logging.getLogger(__name__)


# ==========================
# Erros (todos devolvidos ao chamador, nunca engolidos)
# ==========================
class AvancoErro(Exception):
    codigo = "ADVANCE_ERROR"
    http_status = 400

    def __init__(self, msg: str, **extra: Any):
        super().__init__(msg)
        self.msg = msg
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.msg, "codigo": self.codigo}
        payload.update(self.extra)
        return payload


class ForaDeSequencia(AvancoErro):
    codigo = "OUT_OF_SEQUENCE"
    http_status = 409


class EtapaInvalida(AvancoErro):
    codigo = "INVALID_TARGET"


class AnexoAusente(AvancoErro):
    codigo = "MISSING_ATTACHMENT"


class TipoAnexoInvalido(AvancoErro):
    codigo = "WRONG_ATTACHMENT_TYPE"


class Proibido(AvancoErro):
    codigo = "FORBIDDEN"
    http_status = 403


class FalhaArmazenamento(AvancoErro):
    codigo = "STORAGE_FAILURE"
    http_status = 502


class ModificacaoConcorrente(AvancoErro):
    codigo = "CONCURRENT_MODIFICATION"
    http_status = 409


class NaoEncontrado(AvancoErro):
    codigo = "NOT_FOUND"
    http_status = 404


class Anexo(NamedTuple):
    nome: str
    conteudo: bytes
    content_type: Optional[str] = None

    @property
    def tipo(self) -> Optional[str]:
        return classificar_anexo(self.nome, self.content_type)


def _agora() -> str:
    return datetime.now().isoformat(timespec="seconds")


def registrar_log(conn: sqlite3.Connection, carregamento_id: int, user_id: Optional[int],
                  acao: str, detalhe: Dict[str, Any]) -> None:
    conn.execute(
        "INSERT INTO carregamento_logs(carregamento_id,user_id,acao,detalhe_json) VALUES (?,?,?,?)",
        (carregamento_id, user_id, acao, json.dumps(detalhe))
    )


# ==========================
# Leitura
# ==========================
def carregar_carregamento(conn: sqlite3.Connection, carregamento_id: int) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM carregamentos WHERE id=?", (carregamento_id,)).fetchone()
    if not row:
        raise NaoEncontrado("carregamento não encontrado", carregamento_id=carregamento_id)
    return dict(row)


def serializar_carregamento(carregamento: Dict[str, Any]) -> Dict[str, Any]:
    """Formato público: {id, status, currentStage, clientId, warehouseId, createdAt, stage1..stage5}."""
    out = {
        "id": carregamento["id"],
        "status": carregamento["status"],
        "currentStage": carregamento["etapa_atual"],
        "clientId": carregamento["cliente_id"],
        "warehouseId": carregamento["armazem_id"],
        "createdAt": carregamento["created_at"],
    }
    for etapa in ETAPAS_COM_DADOS:
        out[f"stage{etapa.ordem}"] = dados_da_etapa(carregamento, etapa)
    return out


def tempo_decorrido_min(carregamento: Dict[str, Any], agora: Optional[datetime] = None) -> Optional[int]:
    """Minutos desde created_at (None se a data não puder ser lida)."""
    raw = carregamento.get("created_at")
    if not raw:
        return None
    try:
        criado = datetime.fromisoformat(str(raw).replace("T", " "))
    except ValueError:
        return None
    agora = agora or datetime.now()
    return max(0, int((agora - criado).total_seconds() // 60))


# ==========================
# Criação / cancelamento (agendamento e cancelamento ficam fora do fluxo de etapas)
# ==========================
def criar_carregamento(conn: sqlite3.Connection, cliente_id: int, armazem_id: int,
                       user_id: Optional[int] = None, **extra: Any) -> Dict[str, Any]:
    if not conn.execute("SELECT 1 FROM clientes WHERE id=?", (cliente_id,)).fetchone():
        raise NaoEncontrado("cliente não encontrado", cliente_id=cliente_id)
    if not conn.execute("SELECT 1 FROM armazens WHERE id=? AND ativo=1", (armazem_id,)).fetchone():
        raise NaoEncontrado("armazém não encontrado ou inativo", armazem_id=armazem_id)
    cur = conn.execute("""
        INSERT INTO carregamentos (cliente_id, armazem_id, etapa_atual, status, placa, motorista, data_prevista, created_at)
        VALUES (?,?,0,'awaiting',?,?,?,?)
    """, (cliente_id, armazem_id, extra.get("placa"), extra.get("motorista"),
          extra.get("data_prevista"), _agora()))
    cid = cur.lastrowid
    registrar_log(conn, cid, user_id, "CREATED", {"cliente_id": cliente_id, "armazem_id": armazem_id})
    return carregar_carregamento(conn, cid)


def cancelar_carregamento(conn: sqlite3.Connection, carregamento_id: int,
                          user_id: Optional[int] = None, motivo: Optional[str] = None) -> Dict[str, Any]:
    carregamento = carregar_carregamento(conn, carregamento_id)
    if carregamento["status"] in ("finalized", "cancelled"):
        raise EtapaInvalida("carregamento já encerrado", status=carregamento["status"])
    cur = conn.execute(
        "UPDATE carregamentos SET status='cancelled' WHERE id=? AND etapa_atual=? AND status=?",
        (carregamento_id, carregamento["etapa_atual"], carregamento["status"])
    )
    if cur.rowcount != 1:
        raise ModificacaoConcorrente("carregamento alterado por outra sessão")
    registrar_log(conn, carregamento_id, user_id, "CANCELLED",
                  {"etapa_atual": carregamento["etapa_atual"], "motivo": motivo})
    return carregar_carregamento(conn, carregamento_id)


# ==========================
# Avanço de etapa
# ==========================
def _validar_anexos(etapa: int, anexo: Optional[Anexo], anexo_secundario: Optional[Anexo]) -> None:
    definicao = get_etapa(etapa)
    if anexo is None or not anexo.conteudo:
        raise AnexoAusente(
            "Anexe a nota fiscal (PDF)." if definicao.requer_documento else "Anexe a foto obrigatória.",
            etapa=etapa)
    if anexo.tipo != definicao.tipo_anexo:
        raise TipoAnexoInvalido("Tipo de arquivo inválido para a etapa.",
                                etapa=etapa, esperado=definicao.tipo_anexo, recebido=anexo.tipo)
    if etapa == ETAPA_DOCUMENTACAO and anexo_secundario is not None and anexo_secundario.conteudo:
        if anexo_secundario.tipo != ANEXO_XML:
            raise TipoAnexoInvalido("O arquivo complementar deve ser XML.",
                                    etapa=etapa, esperado=ANEXO_XML, recebido=anexo_secundario.tipo)


def _upload(storage: Any, anexo: Anexo, carregamento_id: int, etapa: int) -> str:
    destino = f"carregamentos/{carregamento_id}/etapa_{etapa}/{anexo.nome}"
    try:
        return storage.upload(anexo.conteudo, destino)
    except StorageFailure as e:
        raise FalhaArmazenamento(f"Falha no envio do anexo: {e}", etapa=etapa) from e
    except Exception as e:  # timeouts / erros do backend de arquivos
        logger.exception("Erro inesperado no storage (carregamento=%s etapa=%s)", carregamento_id, etapa)
        raise FalhaArmazenamento(f"Falha no envio do anexo: {e}", etapa=etapa) from e


def avancar_etapa(conn: sqlite3.Connection, carregamento: Dict[str, Any], etapa: int,
                  anexo: Optional[Anexo], anexo_secundario: Optional[Anexo] = None,
                  observacao: Optional[str] = None, *, ator: Ator, storage: Any,
                  agora: Optional[str] = None) -> Dict[str, Any]:
    """Conclui ``etapa`` do carregamento (snapshot lido pelo chamador).

    O commit fica com quem abriu a conexão (get_conn): se qualquer passo daqui
    levantar, nada é gravado.
    """
    cid = carregamento["id"]
    atual = int(carregamento["etapa_atual"] or 0)

    if etapa != atual + 1:
        raise ForaDeSequencia("Etapa fora de sequência.", etapa=etapa, etapa_atual=atual)
    if etapa > ETAPA_DOCUMENTACAO:
        raise EtapaInvalida("A etapa final é concluída automaticamente.", etapa=etapa)
    _validar_anexos(etapa, anexo, anexo_secundario)
    if not pode_editar(ator, carregamento, etapa):
        raise Proibido("Sem permissão para avançar esta etapa.", etapa=etapa)

    definicao = get_etapa(etapa)
    url = _upload(storage, anexo, cid, etapa)
    url_secundaria = None
    if definicao.campo_url_secundaria and anexo_secundario is not None and anexo_secundario.conteudo:
        url_secundaria = _upload(storage, anexo_secundario, cid, etapa)

    nova_etapa = ETAPA_FINAL if etapa == ETAPA_DOCUMENTACAO else etapa
    novo_status = status_para_etapa(nova_etapa)
    obs = (observacao or "").strip() or None
    quando = agora or _agora()

    sets: List[str] = [f"{definicao.campo_data}=?", f"{definicao.campo_obs}=?", f"{definicao.campo_url}=?"]
    params: List[Any] = [quando, obs, url]
    if definicao.campo_url_secundaria:
        sets.append(f"{definicao.campo_url_secundaria}=?")
        params.append(url_secundaria)
    sets += ["etapa_atual=?", "status=?"]
    params += [nova_etapa, novo_status, cid, atual]

    # guarda otimista: só grava se ninguém mexeu desde a leitura
    cur = conn.execute(
        f"UPDATE carregamentos SET {', '.join(sets)} "
        "WHERE id=? AND etapa_atual=? AND status <> 'cancelled'",
        params
    )
    if cur.rowcount != 1:
        logger.warning("Avanço concorrente rejeitado (carregamento=%s etapa=%s)", cid, etapa)
        raise ModificacaoConcorrente("O carregamento foi atualizado por outra sessão. Recarregue.",
                                     etapa=etapa, etapa_esperada=atual)

    registrar_log(conn, cid, ator.id, "STAGE_ADVANCED", {
        "etapa": etapa, "de": atual, "para": nova_etapa, "status": novo_status,
        "url": url, "url_secundaria": url_secundaria,
    })
    logger.info("Carregamento %s: etapa %s concluída (etapa_atual=%s, status=%s)",
                cid, etapa, nova_etapa, novo_status)
    return carregar_carregamento(conn, cid)
