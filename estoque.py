# -*- coding: utf-8 -*-
"""Estoque por armazém: entradas, ajuste e listagem agrupada."""
from __future__ import annotations

import sqlite3
from datetime import date, datetime
from typing import Any, Dict, List, Optional

LIMITE_ESTOQUE_BAIXO = 10


class EstoqueErro(ValueError):
    pass


def _as_float(x) -> Optional[float]:
    """Aceita '12,5' ou '12.5'."""
    if x is None or x == "":
        return None
    if isinstance(x, (int, float)):
        return float(x)
    try:
        return float(str(x).replace(",", ".").strip())
    except ValueError:
        return None


def status_quantidade(qtd: float) -> str:
    return "baixo" if qtd < LIMITE_ESTOQUE_BAIXO else "normal"


def registrar_entrada(conn: sqlite3.Connection, produto_id: Any, armazem_id: Any,
                      quantidade: Any, user_id: Optional[int] = None) -> Dict[str, Any]:
    """Soma ``quantidade`` ao saldo do produto no armazém (cria a linha se preciso).

    Retorna {produto, armazem, anterior, atual}.
    """
    if not produto_id or not armazem_id or quantidade in (None, ""):
        raise EstoqueErro("Preencha todos os campos obrigatórios")
    qtd = _as_float(quantidade)
    if qtd is None or qtd <= 0:
        raise EstoqueErro("Quantidade inválida: informe um valor maior que zero.")

    produto = conn.execute("SELECT id, nome, unidade FROM produtos WHERE id=?", (produto_id,)).fetchone()
    if not produto:
        raise EstoqueErro("Produto não encontrado")
    armazem = conn.execute(
        "SELECT id, nome, cidade, estado FROM armazens WHERE id=? AND ativo=1", (armazem_id,)
    ).fetchone()
    if not armazem:
        raise EstoqueErro("Armazém não encontrado ou inativo")

    atual = conn.execute(
        "SELECT quantidade FROM estoque WHERE produto_id=? AND armazem_id=?",
        (produto["id"], armazem["id"])
    ).fetchone()
    anterior = float(atual["quantidade"]) if atual else 0.0
    nova = anterior + qtd
    conn.execute("""
        INSERT INTO estoque (produto_id, armazem_id, quantidade, updated_by, updated_at)
        VALUES (?,?,?,?,?)
        ON CONFLICT(produto_id, armazem_id) DO UPDATE SET
            quantidade=excluded.quantidade,
            updated_by=excluded.updated_by,
            updated_at=excluded.updated_at
    """, (produto["id"], armazem["id"], nova, user_id, datetime.now().isoformat(timespec="seconds")))
    return {
        "produto": dict(produto),
        "armazem": dict(armazem),
        "anterior": anterior,
        "atual": nova,
    }


def ajustar_quantidade(conn: sqlite3.Connection, estoque_id: int, quantidade: Any,
                       user_id: Optional[int] = None) -> Dict[str, Any]:
    qtd = _as_float(quantidade)
    if qtd is None or qtd < 0:
        raise EstoqueErro("Quantidade inválida.")
    cur = conn.execute(
        "UPDATE estoque SET quantidade=?, updated_by=?, updated_at=? WHERE id=?",
        (qtd, user_id, datetime.now().isoformat(timespec="seconds"), estoque_id)
    )
    if cur.rowcount == 0:
        raise LookupError("registro de estoque não encontrado")
    return dict(conn.execute("SELECT * FROM estoque WHERE id=?", (estoque_id,)).fetchone())


def _data(raw: Any) -> Optional[date]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(str(raw)).date()
    except ValueError:
        return None


def listar_estoque_por_armazem(conn: sqlite3.Connection, armazem_ids: Optional[List[int]] = None,
                               busca: str = "", status: Optional[List[str]] = None,
                               data_de: Optional[str] = None, data_ate: Optional[str] = None) -> List[Dict[str, Any]]:
    """Agrupa o saldo por armazém (ordem: cidade, nome) aplicando os filtros da tela."""
    rows = conn.execute("""
        SELECT e.id, e.quantidade, e.updated_at,
               p.id AS produto_id, p.nome AS produto_nome, p.unidade,
               a.id AS armazem_id, a.nome AS armazem_nome, a.cidade, a.estado,
               a.capacidade_total, a.ativo
        FROM estoque e
        JOIN produtos p ON p.id = e.produto_id
        JOIN armazens a ON a.id = e.armazem_id
        ORDER BY e.updated_at DESC
    """).fetchall()

    termo = (busca or "").strip().lower()
    de = _data(data_de)
    ate = _data(data_ate)
    grupos: Dict[int, Dict[str, Any]] = {}
    for r in rows:
        if armazem_ids and r["armazem_id"] not in armazem_ids:
            continue
        grupo = grupos.get(r["armazem_id"])
        if grupo is None:
            grupo = grupos[r["armazem_id"]] = {
                "id": r["armazem_id"],
                "nome": r["armazem_nome"],
                "cidade": r["cidade"],
                "estado": r["estado"],
                "capacidade_total": r["capacidade_total"],
                "ativo": bool(r["ativo"]),
                "produtos": [],
            }
        qtd = float(r["quantidade"] or 0)
        item = {
            "id": r["id"],
            "produto_id": r["produto_id"],
            "produto": r["produto_nome"],
            "quantidade": qtd,
            "unidade": r["unidade"] or "t",
            "status": status_quantidade(qtd),
            "data": r["updated_at"],
        }
        if status and item["status"] not in status:
            continue
        atualizado = _data(r["updated_at"])
        if de and (atualizado is None or atualizado < de):
            continue
        if ate and (atualizado is None or atualizado > ate):
            continue
        grupo["produtos"].append(item)

    out = []
    for g in grupos.values():
        if termo:
            hay = f"{g['nome']} {g['cidade']}/{g['estado'] or ''}".lower()
            if termo not in hay:
                # busca também pelo nome do produto
                g["produtos"] = [p for p in g["produtos"] if termo in p["produto"].lower()]
                if not g["produtos"]:
                    continue
        out.append(g)
    out.sort(key=lambda g: ((g["cidade"] or ""), (g["nome"] or "")))
    return out
