# -*- coding: utf-8 -*-
"""Permissões genéricas (recurso x ação) usadas para liberar telas/rotas.

Não faz parte do fluxo de etapas: é só uma consulta à tabela role_permissions.
"""
from __future__ import annotations

import sqlite3
from typing import Dict, Iterable

RECURSOS = ("users", "roles", "estoque", "produtos", "armazens",
            "liberacoes", "agendamentos", "carregamentos", "clientes")
ACOES = ("create", "read", "update", "delete")


def carregar_permissoes(conn: sqlite3.Connection, roles: Iterable[str]) -> Dict[str, Dict[str, bool]]:
    """Mescla (OR) as permissões de todos os papéis do usuário."""
    roles = list(roles)
    if not roles:
        return {}
    marks = ",".join("?" * len(roles))
    rows = conn.execute(
        f"SELECT * FROM role_permissions WHERE role IN ({marks})", roles
    ).fetchall()
    perms: Dict[str, Dict[str, bool]] = {}
    for r in rows:
        atual = perms.setdefault(r["resource"], {f"can_{a}": False for a in ACOES})
        for a in ACOES:
            atual[f"can_{a}"] = atual[f"can_{a}"] or bool(r[f"can_{a}"])
    return perms


def can_access(perms: Dict[str, Dict[str, bool]], resource: str, action: str = "read") -> bool:
    perm = perms.get(resource)
    if not perm or action not in ACOES:
        return False
    return bool(perm.get(f"can_{action}"))
