# db.py
import os
import sqlite3
from contextlib import contextmanager

from etapas import colunas_etapas
from permissoes import RECURSOS

DB_PATH = os.environ.get("APP_DB_PATH", "app.db")

def _connect() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    # Boas práticas no SQLite
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.execute("PRAGMA synchronous = NORMAL;")
    return conn

@contextmanager
def get_conn():
    conn = _connect()
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


# ---------- helpers de migração aditiva ----------
def _table_cols(conn: sqlite3.Connection, table: str) -> list[str]:
    return [r[1] for r in conn.execute(f"PRAGMA table_info({table})").fetchall()]

def _add_col_if_missing(conn: sqlite3.Connection, table: str, col_def: str):
    col_name = col_def.strip().split()[0]
    if col_name not in _table_cols(conn, table):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_def}")


def _ddl_colunas_etapas() -> str:
    """Colunas por etapa geradas a partir do catálogo (etapas.py)."""
    return ",\n            ".join(f"{col} TEXT" for col in colunas_etapas())


# ---------- criação “do zero” (idempotente) ----------
def init_db():
    with get_conn() as conn:
        # =========================
        # USUÁRIOS / AUTENTICAÇÃO
        # =========================
        conn.execute("""
        CREATE TABLE IF NOT EXISTS usuarios (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            nome         TEXT,
            email        TEXT,
            senha_hash   TEXT,
            armazem_id   INTEGER,            -- só para papel warehouse
            cliente_id   INTEGER,            -- só para papel client
            ativo        INTEGER DEFAULT 1,
            created_at   DATETIME DEFAULT CURRENT_TIMESTAMP
        );
        """)
        conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS idxu_usuarios_email ON usuarios(email);")

        # Um usuário pode ter mais de um papel
        conn.execute("""
        CREATE TABLE IF NOT EXISTS user_roles (
            usuario_id  INTEGER NOT NULL REFERENCES usuarios(id) ON DELETE CASCADE,
            role        TEXT NOT NULL CHECK (role IN ('admin','logistics','warehouse','client')),
            PRIMARY KEY (usuario_id, role)
        );
        """)

        # Permissões genéricas (recurso x ação) por papel
        conn.execute("""
        CREATE TABLE IF NOT EXISTS role_permissions (
            role        TEXT NOT NULL,
            resource    TEXT NOT NULL,
            can_create  INTEGER NOT NULL DEFAULT 0,
            can_read    INTEGER NOT NULL DEFAULT 0,
            can_update  INTEGER NOT NULL DEFAULT 0,
            can_delete  INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (role, resource)
        );
        """)

        # =========================
        # CLIENTES / ARMAZÉNS / PRODUTOS
        # =========================
        conn.execute("""
        CREATE TABLE IF NOT EXISTS clientes (
            id                INTEGER PRIMARY KEY AUTOINCREMENT,
            nome              TEXT NOT NULL,
            cnpj_cpf          TEXT,
            email             TEXT,
            telefone          TEXT,
            cidade            TEXT,
            estado            TEXT,
            ativo             INTEGER DEFAULT 1,
            created_at        DATETIME DEFAULT CURRENT_TIMESTAMP
        );
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_clientes_nome ON clientes(nome);")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS armazens (
            id                INTEGER PRIMARY KEY AUTOINCREMENT,
            nome              TEXT NOT NULL,
            cidade            TEXT NOT NULL,
            estado            TEXT,
            capacidade_total  REAL,
            ativo             INTEGER DEFAULT 1,
            created_at        DATETIME DEFAULT CURRENT_TIMESTAMP
        );
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_armazens_cidade ON armazens(cidade);")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS produtos (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            nome        TEXT NOT NULL,
            unidade     TEXT NOT NULL DEFAULT 't' CHECK (unidade IN ('t','kg')),
            created_at  DATETIME DEFAULT CURRENT_TIMESTAMP
        );
        """)
        conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS idxu_produtos_nome ON produtos(nome);")

        # =========================
        # ESTOQUE (saldo por produto x armazém)
        # =========================
        conn.execute("""
        CREATE TABLE IF NOT EXISTS estoque (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            produto_id  INTEGER NOT NULL REFERENCES produtos(id) ON DELETE CASCADE,
            armazem_id  INTEGER NOT NULL REFERENCES armazens(id) ON DELETE CASCADE,
            quantidade  REAL NOT NULL DEFAULT 0,
            updated_by  INTEGER,
            updated_at  TEXT
        );
        """)
        conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS idxu_estoque_prod_arm ON estoque(produto_id, armazem_id);")

        # =========================
        # CARREGAMENTOS
        # =========================
        conn.execute(f"""
        CREATE TABLE IF NOT EXISTS carregamentos (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            cliente_id   INTEGER NOT NULL REFERENCES clientes(id),
            armazem_id   INTEGER NOT NULL REFERENCES armazens(id),
            etapa_atual  INTEGER NOT NULL DEFAULT 0 CHECK (etapa_atual BETWEEN 0 AND 6),
            status       TEXT NOT NULL DEFAULT 'awaiting'
                         CHECK (status IN ('awaiting','in_progress','finalized','cancelled')),
            placa        TEXT,
            motorista    TEXT,
            data_prevista TEXT,
            {_ddl_colunas_etapas()},
            created_at   DATETIME DEFAULT CURRENT_TIMESTAMP
        );
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_carreg_cliente ON carregamentos(cliente_id);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_carreg_armazem ON carregamentos(armazem_id);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_carreg_status  ON carregamentos(status);")

        # Logs de carregamento (auditoria simples)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS carregamento_logs (
            id               INTEGER PRIMARY KEY AUTOINCREMENT,
            carregamento_id  INTEGER NOT NULL REFERENCES carregamentos(id) ON DELETE CASCADE,
            user_id          INTEGER,
            acao             TEXT NOT NULL, -- CREATED / STAGE_ADVANCED / CANCELLED
            detalhe_json     TEXT,
            created_at       DATETIME DEFAULT CURRENT_TIMESTAMP
        );
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_carreg_logs ON carregamento_logs(carregamento_id);")

        # =========================
        # COLABORADORES
        # =========================
        conn.execute("""
        CREATE TABLE IF NOT EXISTS colaboradores (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          nome TEXT NOT NULL,
          cpf TEXT UNIQUE,
          email TEXT,
          telefone TEXT,
          cargo TEXT,
          departamento TEXT,
          role TEXT CHECK (role IN ('logistics','comercial','admin')) DEFAULT 'comercial',
          ativo INTEGER NOT NULL DEFAULT 1,
          usuario_id INTEGER REFERENCES usuarios(id) ON DELETE SET NULL,
          created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
          updated_at TEXT
        );
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_colab_nome  ON colaboradores(nome);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_colab_ativo ON colaboradores(ativo);")

    return True


# Permissões padrão: role -> resource -> (create, read, update, delete)
PERMISSOES_PADRAO = {
    "admin": {r: (1, 1, 1, 1) for r in RECURSOS},
    "logistics": {
        **{r: (1, 1, 1, 0) for r in ("estoque", "produtos", "armazens", "liberacoes",
                                     "agendamentos", "carregamentos", "clientes")},
        "users": (0, 1, 0, 0),
    },
    "warehouse": {
        "carregamentos": (0, 1, 1, 0),
        "estoque": (0, 1, 0, 0),
    },
    "client": {
        "carregamentos": (0, 1, 0, 0),
        "liberacoes": (0, 1, 0, 0),
    },
}


# ---------- bootstrap automático na subida ----------
def bootstrap_db():
    """
    1) Cria tudo se não existir (init_db)
    2) Aplica migrações aditivas simples (ADD COLUMN),
       para dar compat com bancos antigos — sem precisar rodar nada manualmente.
    3) Semeia role_permissions sem sobrescrever ajustes já feitos.
    """
    init_db()
    with get_conn() as conn:
        # carregamentos: colunas de etapa (ex.: cópia XML da NF) e dados do veículo entraram depois
        novas = [f"{col} TEXT" for col in colunas_etapas()] + ["placa TEXT", "motorista TEXT", "data_prevista TEXT"]
        for col_def in novas:
            try:
                _add_col_if_missing(conn, "carregamentos", col_def)
            except sqlite3.OperationalError:
                pass

        # usuarios: vínculos com armazém / cliente
        for col_def in ("armazem_id INTEGER", "cliente_id INTEGER"):
            try:
                _add_col_if_missing(conn, "usuarios", col_def)
            except sqlite3.OperationalError:
                pass

        rows = []
        for role, recursos in PERMISSOES_PADRAO.items():
            for resource, (c, r, u, d) in recursos.items():
                rows.append((role, resource, c, r, u, d))
        conn.executemany("""
            INSERT OR IGNORE INTO role_permissions
                (role, resource, can_create, can_read, can_update, can_delete)
            VALUES (?,?,?,?,?,?)
        """, rows)

    return True
