# -*- coding: utf-8 -*-
"""Quem pode ver / avançar cada etapa de um carregamento.

Tudo aqui é função pura sobre (ator, carregamento, etapa), exceto as funções
de resolução do ator, que consultam usuarios/user_roles.

Regras (primeira que casar vence):
  1. admin/logistics: vê 1..6; edita só etapa_atual+1 (nunca a 6).
  2. warehouse do MESMO armazém: vê 1..min(etapa_atual+1, 6); edita etapa_atual+1 (<= 5).
  3. client do MESMO cliente: vê só o histórico concluído (1..etapa_atual); nunca edita.
  4. resto: nada (quem chama redireciona para fora do registro).
"""
from __future__ import annotations

import sqlite3
from typing import Any, Dict, FrozenSet, NamedTuple, Optional

from etapas import ETAPA_DOCUMENTACAO, ETAPA_FINAL, etapa_valida

ROLE_ADMIN = "admin"
ROLE_LOGISTICS = "logistics"
ROLE_WAREHOUSE = "warehouse"
ROLE_CLIENT = "client"

ROLES = frozenset({ROLE_ADMIN, ROLE_LOGISTICS, ROLE_WAREHOUSE, ROLE_CLIENT})
ROLES_ELEVADOS = frozenset({ROLE_ADMIN, ROLE_LOGISTICS})

# Estados de exibição de uma etapa
VISAO_FINAL = "FINAL"
VISAO_CONCLUIDA = "COMPLETED"
VISAO_EDITAVEL = "EDITABLE"
VISAO_FUTURA_BLOQUEADA = "LOCKED_FUTURE"
VISAO_SEM_PERMISSAO = "LOCKED_NO_PERMISSION"


class Ator(NamedTuple):
    id: Optional[int]
    roles: FrozenSet[str]
    armazem_id: Optional[int] = None
    cliente_id: Optional[int] = None

    @property
    def elevado(self) -> bool:
        return not self.roles.isdisjoint(ROLES_ELEVADOS)

    @property
    def is_armazem(self) -> bool:
        return ROLE_WAREHOUSE in self.roles

    @property
    def is_cliente(self) -> bool:
        return ROLE_CLIENT in self.roles


ATOR_ANONIMO = Ator(None, frozenset())


# ==========================
# Resolução do ator (sessão -> banco)
# ==========================
def get_roles_for(conn: sqlite3.Connection, identity: Optional[int]) -> FrozenSet[str]:
    if identity is None:
        return frozenset()
    rows = conn.execute("SELECT role FROM user_roles WHERE usuario_id=?", (identity,)).fetchall()
    return frozenset(r["role"] for r in rows if r["role"] in ROLES)


def get_warehouse_id_for(conn: sqlite3.Connection, identity: Optional[int]) -> Optional[int]:
    if identity is None:
        return None
    row = conn.execute("SELECT armazem_id FROM usuarios WHERE id=? AND ativo=1", (identity,)).fetchone()
    return row["armazem_id"] if row else None


def get_client_id_for(conn: sqlite3.Connection, identity: Optional[int]) -> Optional[int]:
    if identity is None:
        return None
    row = conn.execute("SELECT cliente_id FROM usuarios WHERE id=? AND ativo=1", (identity,)).fetchone()
    return row["cliente_id"] if row else None


def resolver_ator(conn: sqlite3.Connection, identity: Optional[int]) -> Ator:
    """Monta o Ator a partir do id do usuário logado (None -> anônimo)."""
    if identity is None:
        return ATOR_ANONIMO
    ativo = conn.execute("SELECT 1 FROM usuarios WHERE id=? AND ativo=1", (identity,)).fetchone()
    if not ativo:
        return ATOR_ANONIMO
    roles = get_roles_for(conn, identity)
    return Ator(
        id=identity,
        roles=roles,
        armazem_id=get_warehouse_id_for(conn, identity) if ROLE_WAREHOUSE in roles else None,
        cliente_id=get_client_id_for(conn, identity) if ROLE_CLIENT in roles else None,
    )


# ==========================
# Política de acesso por etapa
# ==========================
def _etapa_atual(carregamento: Dict[str, Any]) -> int:
    return int(carregamento.get("etapa_atual") or 0)


def _dono_armazem(ator: Ator, carregamento: Dict[str, Any]) -> bool:
    return (ator.is_armazem and ator.armazem_id is not None
            and ator.armazem_id == carregamento.get("armazem_id"))


def _dono_cliente(ator: Ator, carregamento: Dict[str, Any]) -> bool:
    return (ator.is_cliente and ator.cliente_id is not None
            and ator.cliente_id == carregamento.get("cliente_id"))


def tem_relacao(ator: Ator, carregamento: Dict[str, Any]) -> bool:
    """False => o ator não deve nem chegar na tela do carregamento."""
    return ator.elevado or _dono_armazem(ator, carregamento) or _dono_cliente(ator, carregamento)


def pode_visualizar(ator: Ator, carregamento: Dict[str, Any], etapa: int, relaxado: bool = False) -> bool:
    """canView. ``relaxado`` libera a pré-visualização (somente leitura) de todas as
    etapas para warehouse/client donos do registro."""
    if not etapa_valida(etapa):
        return False
    atual = _etapa_atual(carregamento)
    if ator.elevado:
        return True
    if _dono_armazem(ator, carregamento):
        return relaxado or etapa <= min(atual + 1, ETAPA_FINAL)
    if _dono_cliente(ator, carregamento):
        return relaxado or etapa <= atual
    return False


def pode_editar(ator: Ator, carregamento: Dict[str, Any], etapa: int) -> bool:
    """canEdit: só a etapa imediatamente seguinte, nunca a 6, nunca em cancelado."""
    if not etapa_valida(etapa):
        return False
    if carregamento.get("status") == "cancelled":
        return False
    atual = _etapa_atual(carregamento)
    proxima = etapa == atual + 1 and etapa <= ETAPA_DOCUMENTACAO
    if ator.elevado:
        return proxima
    if _dono_armazem(ator, carregamento):
        return proxima
    return False


# ==========================
# Projeção para a tela
# ==========================
def projetar_visao(ator: Ator, carregamento: Dict[str, Any], etapa_selecionada: int,
                   relaxado: bool = False) -> str:
    # só LOCKED_FUTURE depende de pode_visualizar; concluída/final valem para qualquer ator
    if not etapa_valida(etapa_selecionada):
        return VISAO_SEM_PERMISSAO
    atual = _etapa_atual(carregamento)
    if etapa_selecionada == ETAPA_FINAL and atual == ETAPA_FINAL:
        return VISAO_FINAL
    if etapa_selecionada <= atual and etapa_selecionada < ETAPA_FINAL:
        return VISAO_CONCLUIDA
    if pode_editar(ator, carregamento, etapa_selecionada):
        return VISAO_EDITAVEL
    if etapa_selecionada > atual and pode_visualizar(ator, carregamento, etapa_selecionada, relaxado):
        return VISAO_FUTURA_BLOQUEADA
    return VISAO_SEM_PERMISSAO


def etapa_inicial(ator: Ator, carregamento: Dict[str, Any]) -> int:
    atual = _etapa_atual(carregamento)
    if ator.is_armazem and not ator.elevado:
        return min(atual + 1, ETAPA_FINAL)
    return atual if atual >= 1 else 1


class RascunhoEdicao(NamedTuple):
    """Estado do formulário de avanço (só da tela; nunca gravado no banco)."""
    etapa: int
    observacao: str = ""
    nome_anexo: Optional[str] = None
    nome_anexo_secundario: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._asdict())
