# -*- coding: utf-8 -*-
"""Criação de usuários com papel (admin / logistics / warehouse / client).

Passos: valida -> checa se já existe admin (bootstrap do primeiro admin) ->
exige solicitante admin -> cria -> confere -> atribui papel. Qualquer falha
depois da criação apaga o usuário criado (rollback manual) e levanta
ProvisionamentoErro com o passo (stage) onde parou.
"""
from __future__ import annotations

import logging
import re
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from werkzeug.security import generate_password_hash

from acesso import ROLE_ADMIN, ROLE_CLIENT, ROLE_LOGISTICS, ROLE_WAREHOUSE, get_roles_for

logger = logging.getLogger(__name__)

WEAK_PASSWORDS = {"123456", "12345678", "password", "senha123", "admin123", "qwerty"}
ROLES_PROVISIONAVEIS = {ROLE_ADMIN, ROLE_LOGISTICS, ROLE_WAREHOUSE, ROLE_CLIENT}
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ProvisionamentoErro(Exception):
    def __init__(self, msg: str, stage: str, status: int = 400, details: Any = None):
        super().__init__(msg)
        self.msg = msg
        self.stage = stage
        self.status = status
        self.details = details


def validar_dados(dados: Dict[str, Any]) -> Dict[str, Any]:
    email = (dados.get("email") or "").strip().lower()
    password = dados.get("password") or ""
    nome = (dados.get("nome") or "").strip()
    role = (dados.get("role") or "").strip()

    erros: Dict[str, str] = {}
    if not email or len(email) > 255 or not _EMAIL_RE.match(email):
        erros["email"] = "email inválido"
    if not (6 <= len(password) <= 128):
        erros["password"] = "senha deve ter entre 6 e 128 caracteres"
    if not (2 <= len(nome) <= 100):
        erros["nome"] = "nome deve ter entre 2 e 100 caracteres"
    if role not in ROLES_PROVISIONAVEIS:
        erros["role"] = "papel inválido"
    armazem_id = dados.get("armazem_id")
    cliente_id = dados.get("cliente_id")
    if role == ROLE_WAREHOUSE and not armazem_id:
        erros["armazem_id"] = "obrigatório para papel warehouse"
    if role == ROLE_CLIENT and not cliente_id:
        erros["cliente_id"] = "obrigatório para papel client"
    if erros:
        raise ProvisionamentoErro("Invalid payload", "validation", 400, erros)
    if password in WEAK_PASSWORDS:
        raise ProvisionamentoErro("Weak password", "validation", 400,
                                  "Use letters, numbers and special characters")
    return {
        "email": email, "password": password, "nome": nome, "role": role,
        "armazem_id": armazem_id if role == ROLE_WAREHOUSE else None,
        "cliente_id": cliente_id if role == ROLE_CLIENT else None,
    }


def _apagar_usuario(conn: sqlite3.Connection, usuario_id: int) -> None:
    conn.execute("DELETE FROM user_roles WHERE usuario_id=?", (usuario_id,))
    conn.execute("DELETE FROM usuarios WHERE id=?", (usuario_id,))


def criar_usuario(conn: sqlite3.Connection, dados: Dict[str, Any],
                  solicitante_id: Optional[int] = None) -> Dict[str, Any]:
    request_id = str(uuid.uuid4())
    timestamp = datetime.now(timezone.utc).isoformat()
    d = validar_dados(dados)
    logger.info("[admin-users] inicio email=%s role=%s request_id=%s", d["email"], d["role"], request_id)

    admin_count = conn.execute("SELECT COUNT(1) FROM user_roles WHERE role='admin'").fetchone()[0]
    primeiro_admin = admin_count == 0
    if primeiro_admin and d["role"] != ROLE_ADMIN:
        raise ProvisionamentoErro("O primeiro usuário deve ser admin", "adminCheck", 400)
    if not primeiro_admin:
        if solicitante_id is None:
            raise ProvisionamentoErro("Unauthorized", "adminCheck", 401, "Missing session")
        if ROLE_ADMIN not in get_roles_for(conn, solicitante_id):
            raise ProvisionamentoErro("Forbidden: Only admins can create users", "adminCheck", 403)

    if d["armazem_id"] and not conn.execute("SELECT 1 FROM armazens WHERE id=?", (d["armazem_id"],)).fetchone():
        raise ProvisionamentoErro("armazém não encontrado", "validation", 400)
    if d["cliente_id"] and not conn.execute("SELECT 1 FROM clientes WHERE id=?", (d["cliente_id"],)).fetchone():
        raise ProvisionamentoErro("cliente não encontrado", "validation", 400)

    try:
        cur = conn.execute("""
            INSERT INTO usuarios (nome, email, senha_hash, armazem_id, cliente_id, ativo)
            VALUES (?,?,?,?,?,1)
        """, (d["nome"], d["email"], generate_password_hash(d["password"]), d["armazem_id"], d["cliente_id"]))
    except sqlite3.IntegrityError as e:
        raise ProvisionamentoErro("Failed to create user", "createUser", 409, "email already exists") from e
    novo_id = cur.lastrowid

    # conferência pós-criação
    if not conn.execute("SELECT id FROM usuarios WHERE id=?", (novo_id,)).fetchone():
        logger.error("[admin-users] verificação pós-criação falhou, desfazendo (id=%s)", novo_id)
        _apagar_usuario(conn, novo_id)
        raise ProvisionamentoErro("Post creation verification failed", "postCreateVerify", 500)

    try:
        conn.execute("INSERT OR IGNORE INTO user_roles (usuario_id, role) VALUES (?,?)", (novo_id, d["role"]))
    except sqlite3.Error as e:
        logger.error("[admin-users] erro ao atribuir papel: %s", e)
        _apagar_usuario(conn, novo_id)
        raise ProvisionamentoErro("Failed to assign role", "assignRole", 500, str(e)) from e

    return {
        "success": True,
        "user_id": novo_id,
        "email": d["email"],
        "role": d["role"],
        "timestamp": timestamp,
        "request_id": request_id,
        "first_admin_bootstrap": primeiro_admin,
    }
