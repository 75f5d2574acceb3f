# -*- coding: utf-8 -*-
"""Aplicação Flask principal.

TOC:
    1. Imports, Config, Logging & App init
    2. Helpers (sessão, ator, papéis, permissões)
    3. Rotas: Init / Health / Index
    4. REST: Carregamentos (lista, agendamento, detalhe, avanço de etapa, cancelamento, logs)
    5. Páginas: Carregamentos
    6. Anexos (/uploads)
    7. REST: Estoque / Produtos / Armazéns / Clientes
    8. REST: Permissões
    9. REST: Usuários (admin) / Colaboradores
 10. Login / Sessão
 11. Rotas util (__routes__, __dbdiag__)
 12. Main guard
"""
from flask import (Flask, request, jsonify, render_template, redirect, url_for, session, flash,
                   abort, send_from_directory, g)
from werkzeug.security import check_password_hash
import os
import sys
import re
import posixpath
import secrets
import logging
import logging.handlers
import sqlite3
from datetime import datetime
from functools import wraps
from typing import Any, Dict, List, Optional

from db import get_conn, init_db, DB_PATH, bootstrap_db
from etapas import ETAPAS, get_etapa
from acesso import (Ator, ATOR_ANONIMO, resolver_ator, tem_relacao, pode_visualizar,
                    pode_editar, projetar_visao, etapa_inicial, RascunhoEdicao)
from fluxo import (Anexo, AvancoErro, NaoEncontrado, Proibido, avancar_etapa, carregar_carregamento,
                   cancelar_carregamento, criar_carregamento, serializar_carregamento,
                   tempo_decorrido_min)
from storage import ArmazenamentoLocal
from permissoes import carregar_permissoes, can_access, RECURSOS, ACOES
from estoque import EstoqueErro, registrar_entrada, ajustar_quantidade, listar_estoque_por_armazem
from usuarios import ProvisionamentoErro, criar_usuario

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# ===== Config =====
SECRET_KEY = os.environ.get("APP_SECRET_KEY", "mude-esta-chave")
UPLOAD_DIR = os.environ.get("APP_UPLOAD_DIR", os.path.join(BASE_DIR, "uploads"))
LOG_DIR = os.environ.get("APP_LOG_DIR")
PREVIEW_ETAPAS = os.environ.get("APP_PREVIEW_ETAPAS", "0").lower() in ("1", "true", "sim", "yes")
MAX_UPLOAD_MB = int(os.environ.get("APP_MAX_UPLOAD_MB", "20"))


def setup_logging():
    """Console sempre; arquivo diário rotativo só se APP_LOG_DIR estiver definido."""
    logger = logging.getLogger()
    if getattr(setup_logging, "_done", False):
        return
    log_format = '%(asctime)s - %(levelname)s - [%(name)s:%(filename)s:%(lineno)d] - %(message)s'
    formatter = logging.Formatter(log_format)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.INFO)
    logger.addHandler(console_handler)

    if LOG_DIR:
        os.makedirs(LOG_DIR, exist_ok=True)
        handler = logging.handlers.TimedRotatingFileHandler(
            os.path.join(LOG_DIR, "app.log"),
            when='midnight',
            backupCount=30,
            encoding='utf-8'
        )
        handler.setFormatter(formatter)
        handler.suffix = "%Y-%m-%d"
        logger.addHandler(handler)

    logger.setLevel(logging.INFO)
    setup_logging._done = True


setup_logging()
log = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = SECRET_KEY
app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_MB * 1024 * 1024
app.config["UPLOAD_DIR"] = UPLOAD_DIR
app.config["PREVIEW_ETAPAS"] = PREVIEW_ETAPAS
app.config["STORAGE"] = ArmazenamentoLocal(UPLOAD_DIR)
# Cria/atualiza o banco automaticamente na subida (idempotente)
bootstrap_db()

# ==========================
# Helpers
# ==========================
def login_required(view_fn):
    @wraps(view_fn)
    def wrapper(*args, **kwargs):
        if not session.get("user_id"):
            if request.path.startswith("/api/"):
                return jsonify({"error": "login necessário"}), 401
            return redirect(url_for("login"))
        return view_fn(*args, **kwargs)
    return wrapper

def only_digits(s: str) -> str:
    return re.sub(r"\D+", "", s or "")

def bad_request(msg: str, extra: dict | None = None):
    payload = {"error": msg}
    if extra:
        payload.update(extra)
    return jsonify(payload), 400

def get_current_actor_id() -> Optional[int]:
    return session.get("user_id")

def current_actor() -> Ator:
    """Ator da sessão atual (cacheado por request)."""
    if "ator" not in g:
        uid = get_current_actor_id()
        if uid is None:
            g.ator = ATOR_ANONIMO
        else:
            with get_conn() as conn:
                g.ator = resolver_ator(conn, uid)
    return g.ator

def require_roles(*roles):
    def decorator(fn):
        @wraps(fn)
        def inner(*args, **kwargs):
            if current_actor().roles.isdisjoint(roles):
                return jsonify({"error": "permissão negada"}), 403
            return fn(*args, **kwargs)
        return inner
    return decorator

def current_permissions() -> Dict[str, Dict[str, bool]]:
    if "perms" not in g:
        with get_conn() as conn:
            g.perms = carregar_permissoes(conn, current_actor().roles)
    return g.perms

def require_permission(resource: str, action: str = "read"):
    def decorator(fn):
        @wraps(fn)
        def inner(*args, **kwargs):
            if not can_access(current_permissions(), resource, action):
                return jsonify({"error": "permissão negada", "resource": resource, "action": action}), 403
            return fn(*args, **kwargs)
        return inner
    return decorator

def _arg_ativo():
    """Filtro ?ativo=0|1; devolve (valor, resposta de erro)."""
    if request.args.get("ativo") is None:
        return None, None
    ativo = request.args.get("ativo", type=int)
    if ativo not in (0, 1):
        return None, bad_request("ativo deve ser 0 ou 1")
    return ativo, None

def get_storage():
    return app.config["STORAGE"]

def preview_etapas() -> bool:
    return bool(app.config.get("PREVIEW_ETAPAS"))

def _anexo_do_request(campo: str) -> Optional[Anexo]:
    f = request.files.get(campo)
    if f is None or not f.filename:
        return None
    return Anexo(nome=f.filename, conteudo=f.read(), content_type=f.mimetype)

def _visao_etapas(ator: Ator, carregamento: Dict[str, Any]) -> List[Dict[str, Any]]:
    relaxado = preview_etapas()
    out = []
    for etapa in ETAPAS:
        out.append({
            "ordem": etapa.ordem,
            "nome": etapa.nome,
            "requer_documento": etapa.requer_documento,
            "concluida": etapa.ordem <= (carregamento["etapa_atual"] or 0),
            "pode_visualizar": pode_visualizar(ator, carregamento, etapa.ordem, relaxado),
            "pode_editar": pode_editar(ator, carregamento, etapa.ordem),
            "visao": projetar_visao(ator, carregamento, etapa.ordem, relaxado),
        })
    return out

def _detalhe_carregamento(conn: sqlite3.Connection, ator: Ator, carregamento: Dict[str, Any],
                          etapa_sel: Optional[int] = None) -> Dict[str, Any]:
    if etapa_sel is None or not pode_visualizar(ator, carregamento, etapa_sel, preview_etapas()):
        etapa_sel = etapa_inicial(ator, carregamento)
    cliente = conn.execute("SELECT id, nome FROM clientes WHERE id=?", (carregamento["cliente_id"],)).fetchone()
    armazem = conn.execute("SELECT id, nome, cidade, estado FROM armazens WHERE id=?",
                           (carregamento["armazem_id"],)).fetchone()
    return {
        "carregamento": serializar_carregamento(carregamento),
        "cliente": dict(cliente) if cliente else None,
        "armazem": dict(armazem) if armazem else None,
        "etapas": _visao_etapas(ator, carregamento),
        "etapa_selecionada": etapa_sel,
        "visao_selecionada": projetar_visao(ator, carregamento, etapa_sel, preview_etapas()),
        "tempo_decorrido_min": tempo_decorrido_min(carregamento),
        "placa": carregamento.get("placa"),
        "motorista": carregamento.get("motorista"),
        "data_prevista": carregamento.get("data_prevista"),
    }

def _executar_avanco(carregamento_id: int, etapa: int):
    """Roda o avanço; devolve (detalhe, None) ou (None, AvancoErro)."""
    ator = current_actor()
    anexo = _anexo_do_request("anexo")
    anexo_sec = _anexo_do_request("anexo_secundario") or _anexo_do_request("anexo_xml")
    observacao = request.form.get("observacao")
    try:
        with get_conn() as conn:
            carregamento = carregar_carregamento(conn, carregamento_id)
            if not tem_relacao(ator, carregamento):
                raise Proibido("acesso negado", etapa=etapa)
            novo = avancar_etapa(conn, carregamento, etapa, anexo, anexo_sec, observacao,
                                 ator=ator, storage=get_storage())
        with get_conn() as conn:
            return _detalhe_carregamento(conn, ator, novo), None
    except AvancoErro as e:
        log.info("Avanço rejeitado carregamento=%s etapa=%s codigo=%s", carregamento_id, etapa, e.codigo)
        return None, e

def _rascunho(etapa: int) -> RascunhoEdicao:
    anexo = request.files.get("anexo")
    anexo_sec = request.files.get("anexo_secundario") or request.files.get("anexo_xml")
    return RascunhoEdicao(
        etapa=etapa,
        observacao=request.form.get("observacao") or "",
        nome_anexo=anexo.filename if anexo and anexo.filename else None,
        nome_anexo_secundario=anexo_sec.filename if anexo_sec and anexo_sec.filename else None,
    )

# ==========================
# INIT / HEALTH
# ==========================
@app.route("/init-db", methods=["POST"])
@login_required
@require_roles("admin")
def route_init_db():
    init_db()
    return jsonify({"ok": True})

@app.get("/health")
def health():
    return jsonify({"ok": True})

@app.route("/")
def index():
    if session.get("user_id"):
        return redirect(url_for("carregamentos_page"))
    return redirect(url_for("login"))

# ==========================
# CARREGAMENTOS (REST)
# ==========================
@app.route("/api/carregamentos", methods=["GET"])
@login_required
def api_carregamentos_list():
    ator = current_actor()
    sql = """
        SELECT c.*, cl.nome AS cliente_nome, a.nome AS armazem_nome, a.cidade AS armazem_cidade
        FROM carregamentos c
        LEFT JOIN clientes cl ON cl.id = c.cliente_id
        LEFT JOIN armazens a ON a.id = c.armazem_id
        WHERE 1=1
    """
    params: List[Any] = []
    if not ator.elevado:
        filtros = []
        if ator.is_armazem and ator.armazem_id is not None:
            filtros.append("c.armazem_id=?")
            params.append(ator.armazem_id)
        if ator.is_cliente and ator.cliente_id is not None:
            filtros.append("c.cliente_id=?")
            params.append(ator.cliente_id)
        if not filtros:
            return jsonify([])
        sql += " AND (" + " OR ".join(filtros) + ")"
    status = request.args.get("status")
    if status:
        sql += " AND c.status=?"
        params.append(status)
    sql += " ORDER BY c.id DESC"

    with get_conn() as conn:
        rows = conn.execute(sql, params).fetchall()
    out = []
    for r in rows:
        d = dict(r)
        item = serializar_carregamento(d)
        item["cliente_nome"] = d.get("cliente_nome")
        item["armazem_nome"] = d.get("armazem_nome")
        item["armazem_cidade"] = d.get("armazem_cidade")
        item["etapa_nome"] = get_etapa(d["etapa_atual"]).nome if d["etapa_atual"] else None
        out.append(item)
    return jsonify(out)

@app.route("/api/carregamentos", methods=["POST"])
@login_required
@require_roles("admin", "logistics")
def api_carregamentos_create():
    data = request.json or {}
    cliente_id = data.get("cliente_id")
    armazem_id = data.get("armazem_id")
    if not cliente_id or not armazem_id:
        return bad_request("cliente_id e armazem_id obrigatórios")
    try:
        with get_conn() as conn:
            row = criar_carregamento(conn, cliente_id, armazem_id, session.get("user_id"),
                                     placa=(data.get("placa") or "").strip().upper() or None,
                                     motorista=(data.get("motorista") or "").strip() or None,
                                     data_prevista=data.get("data_prevista"))
    except NaoEncontrado as e:
        return bad_request(e.msg, e.extra)
    log.info("Carregamento %s agendado (cliente=%s armazem=%s)", row["id"], cliente_id, armazem_id)
    return jsonify(serializar_carregamento(row)), 201

@app.route("/api/carregamentos/<int:carregamento_id>", methods=["GET"])
@login_required
def api_carregamentos_detail(carregamento_id: int):
    ator = current_actor()
    etapa_sel = request.args.get("etapa", type=int)
    with get_conn() as conn:
        try:
            carregamento = carregar_carregamento(conn, carregamento_id)
        except NaoEncontrado as e:
            return jsonify(e.to_dict()), 404
        if not tem_relacao(ator, carregamento):
            # sem vínculo com o carregamento: o front redireciona para a lista
            return jsonify({"error": "acesso negado", "codigo": "FORBIDDEN",
                            "redirect": url_for("carregamentos_page")}), 403
        return jsonify(_detalhe_carregamento(conn, ator, carregamento, etapa_sel))

@app.route("/api/carregamentos/<int:carregamento_id>/etapas/<int:etapa>", methods=["POST"])
@login_required
def api_carregamentos_avancar(carregamento_id: int, etapa: int):
    """Conclui a etapa (multipart: anexo, anexo_secundario|anexo_xml, observacao)."""
    detalhe, erro = _executar_avanco(carregamento_id, etapa)
    if erro is not None:
        payload = erro.to_dict()
        payload["rascunho"] = _rascunho(etapa).to_dict()
        if erro.http_status == 403:
            payload["redirect"] = url_for("carregamentos_page")
        return jsonify(payload), erro.http_status
    return jsonify(detalhe)

@app.route("/api/carregamentos/<int:carregamento_id>/cancelar", methods=["POST"])
@login_required
@require_roles("admin", "logistics")
def api_carregamentos_cancelar(carregamento_id: int):
    data = request.get_json(silent=True) or {}
    try:
        with get_conn() as conn:
            row = cancelar_carregamento(conn, carregamento_id, session.get("user_id"),
                                        (data.get("motivo") or "").strip() or None)
    except AvancoErro as e:
        return jsonify(e.to_dict()), e.http_status
    return jsonify(serializar_carregamento(row))

@app.route("/api/carregamentos/<int:carregamento_id>/logs", methods=["GET"])
@login_required
def api_carregamentos_logs(carregamento_id: int):
    ator = current_actor()
    with get_conn() as conn:
        try:
            carregamento = carregar_carregamento(conn, carregamento_id)
        except NaoEncontrado as e:
            return jsonify(e.to_dict()), 404
        if not tem_relacao(ator, carregamento):
            return jsonify({"error": "acesso negado"}), 403
        logs = conn.execute("SELECT * FROM carregamento_logs WHERE carregamento_id=? ORDER BY id ASC",
                            (carregamento_id,)).fetchall()
        return jsonify([dict(l) for l in logs])

# ==========================
# PÁGINAS (views HTML)
# ==========================
@app.get("/carregamentos", endpoint="carregamentos_page")
@login_required
def carregamentos_page():
    return render_template("carregamentos.html")

@app.get("/carregamentos/<int:carregamento_id>", endpoint="carregamento_view_page")
@login_required
def carregamento_view_page(carregamento_id: int):
    ator = current_actor()
    with get_conn() as conn:
        try:
            carregamento = carregar_carregamento(conn, carregamento_id)
        except NaoEncontrado:
            abort(404)
        if not tem_relacao(ator, carregamento):
            return redirect(url_for("carregamentos_page"))
        detalhe = _detalhe_carregamento(conn, ator, carregamento, request.args.get("etapa", type=int))
    return render_template("carregamento_detalhe.html", detalhe=detalhe, rascunho=None)

@app.post("/carregamentos/<int:carregamento_id>/etapas/<int:etapa>", endpoint="carregamento_avancar_page")
@login_required
def carregamento_avancar_page(carregamento_id: int, etapa: int):
    detalhe, erro = _executar_avanco(carregamento_id, etapa)
    if erro is None:
        flash("Etapa concluída!" if detalhe["carregamento"]["currentStage"] < 6 else "Processo finalizado!",
              "success")
        return redirect(url_for("carregamento_view_page", carregamento_id=carregamento_id))
    if erro.http_status in (403, 404):
        return redirect(url_for("carregamentos_page"))
    # continua na etapa com a observação digitada preservada
    flash(erro.msg, "error")
    ator = current_actor()
    with get_conn() as conn:
        carregamento = carregar_carregamento(conn, carregamento_id)
        detalhe = _detalhe_carregamento(conn, ator, carregamento, etapa)
    return render_template("carregamento_detalhe.html", detalhe=detalhe,
                           rascunho=_rascunho(etapa), erro=erro.to_dict()), erro.http_status

# ==========================
# ANEXOS
# ==========================
# única forma de chave servida: carregamentos/<id>/etapa_<1..5>/<arquivo>
_CHAVE_CARREG_RE = re.compile(r"^carregamentos/(\d+)/etapa_[1-5]/[^/\\]+$")

@app.get("/uploads/<path:chave>")
@login_required
def serve_anexo(chave: str):
    # normaliza antes de checar ("./", "//", "..") para o vínculo valer para o arquivo real
    chave_norm = posixpath.normpath(chave.replace("\\", "/"))
    m = _CHAVE_CARREG_RE.match(chave_norm)
    if not m:
        abort(404)
    with get_conn() as conn:
        try:
            carregamento = carregar_carregamento(conn, int(m.group(1)))
        except NaoEncontrado:
            abort(404)
    if not tem_relacao(current_actor(), carregamento):
        abort(403)
    return send_from_directory(app.config["UPLOAD_DIR"], chave_norm, as_attachment=False)

# ==========================
# ESTOQUE (REST)
# ==========================
@app.route("/api/estoque", methods=["GET"])
@login_required
@require_permission("estoque", "read")
def api_estoque_list():
    ator = current_actor()
    armazem_ids = request.args.getlist("armazem", type=int)
    if not ator.elevado and ator.is_armazem:
        armazem_ids = [ator.armazem_id]
    with get_conn() as conn:
        grupos = listar_estoque_por_armazem(
            conn,
            armazem_ids=armazem_ids or None,
            busca=request.args.get("q") or "",
            status=request.args.getlist("status") or None,
            data_de=request.args.get("de"),
            data_ate=request.args.get("ate"),
        )
    return jsonify(grupos)

@app.route("/api/estoque", methods=["POST"])
@login_required
@require_permission("estoque", "create")
def api_estoque_entrada():
    data = request.json or {}
    try:
        with get_conn() as conn:
            res = registrar_entrada(conn, data.get("produto_id"), data.get("armazem_id"),
                                    data.get("quantidade"), session.get("user_id"))
    except EstoqueErro as e:
        return bad_request(str(e))
    un = res["produto"]["unidade"]
    res["mensagem"] = (
        f"+{res['atual'] - res['anterior']:g}{un} de {res['produto']['nome']} em "
        f"{res['armazem']['cidade']}/{res['armazem']['estado'] or ''}. Estoque atual: {res['atual']:g}{un}"
    )
    return jsonify(res), 201

@app.route("/api/estoque/<int:estoque_id>", methods=["PATCH"])
@login_required
@require_permission("estoque", "update")
def api_estoque_ajuste(estoque_id: int):
    data = request.json or {}
    try:
        with get_conn() as conn:
            row = ajustar_quantidade(conn, estoque_id, data.get("quantidade"), session.get("user_id"))
    except EstoqueErro as e:
        return bad_request(str(e))
    except LookupError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify(row)

@app.route("/api/produtos", methods=["GET"])
@login_required
@require_permission("produtos", "read")
def api_produtos_list():
    with get_conn() as conn:
        rows = conn.execute("SELECT * FROM produtos ORDER BY nome").fetchall()
        return jsonify([dict(r) for r in rows])

@app.route("/api/produtos", methods=["POST"])
@login_required
@require_permission("produtos", "create")
def api_produtos_create():
    data = request.json or {}
    nome = (data.get("nome") or "").strip()
    unidade = (data.get("unidade") or "t").strip().lower()
    if not nome:
        return bad_request("nome é obrigatório")
    if unidade not in ("t", "kg"):
        return bad_request("unidade deve ser 't' ou 'kg'")
    with get_conn() as conn:
        try:
            cur = conn.execute("INSERT INTO produtos (nome, unidade) VALUES (?,?)", (nome, unidade))
        except sqlite3.IntegrityError:
            return jsonify({"error": "produto já cadastrado"}), 409
        row = conn.execute("SELECT * FROM produtos WHERE id=?", (cur.lastrowid,)).fetchone()
        return jsonify(dict(row)), 201

@app.route("/api/armazens", methods=["GET"])
@login_required
@require_permission("armazens", "read")
def api_armazens_list():
    sql = "SELECT * FROM armazens WHERE 1=1"
    params: List[Any] = []
    ativo, erro = _arg_ativo()
    if erro:
        return erro
    if ativo is not None:
        sql += " AND ativo=?"
        params.append(ativo)
    sql += " ORDER BY cidade, nome"
    with get_conn() as conn:
        rows = conn.execute(sql, params).fetchall()
        return jsonify([dict(r) for r in rows])

@app.route("/api/armazens", methods=["POST"])
@login_required
@require_permission("armazens", "create")
def api_armazens_create():
    data = request.json or {}
    nome = (data.get("nome") or "").strip()
    cidade = (data.get("cidade") or "").strip()
    estado = (data.get("estado") or "").strip().upper()[:2] or None
    if not nome or not cidade:
        return bad_request("Preencha nome e cidade.")
    with get_conn() as conn:
        cur = conn.execute(
            "INSERT INTO armazens (nome, cidade, estado, capacidade_total, ativo) VALUES (?,?,?,?,?)",
            (nome, cidade, estado, data.get("capacidade_total"), int(data.get("ativo", 1)))
        )
        row = conn.execute("SELECT * FROM armazens WHERE id=?", (cur.lastrowid,)).fetchone()
        return jsonify(dict(row)), 201

@app.route("/api/clientes", methods=["GET"])
@login_required
@require_permission("clientes", "read")
def api_clientes_list():
    with get_conn() as conn:
        rows = conn.execute("SELECT * FROM clientes ORDER BY nome").fetchall()
        return jsonify([dict(r) for r in rows])

@app.route("/api/clientes", methods=["POST"])
@login_required
@require_permission("clientes", "create")
def api_clientes_create():
    data = request.json or {}
    nome = (data.get("nome") or "").strip()
    if not nome:
        return bad_request("nome é obrigatório")
    doc = only_digits(data.get("cnpj_cpf") or "") or None
    if doc and len(doc) not in (11, 14):
        return bad_request("CNPJ/CPF inválido (11 ou 14 dígitos).")
    with get_conn() as conn:
        cur = conn.execute("""
            INSERT INTO clientes (nome, cnpj_cpf, email, telefone, cidade, estado)
            VALUES (?,?,?,?,?,?)
        """, (nome, doc, (data.get("email") or "").strip() or None,
              (data.get("telefone") or "").strip() or None,
              (data.get("cidade") or "").strip() or None,
              (data.get("estado") or "").strip().upper()[:2] or None))
        row = conn.execute("SELECT * FROM clientes WHERE id=?", (cur.lastrowid,)).fetchone()
        return jsonify(dict(row)), 201

# ==========================
# PERMISSÕES
# ==========================
@app.get("/api/permissoes")
@login_required
def api_permissoes():
    perms = current_permissions()
    resource = request.args.get("resource")
    if resource:
        action = request.args.get("action") or "read"
        return jsonify({"resource": resource, "action": action,
                        "allowed": can_access(perms, resource, action)})
    return jsonify({"roles": sorted(current_actor().roles), "permissions": perms,
                    "resources": list(RECURSOS), "actions": list(ACOES)})

# ==========================
# USUÁRIOS (admin) / COLABORADORES
# ==========================
def _provisionamento_erro(e: ProvisionamentoErro, data: Dict[str, Any]):
    return jsonify({
        "error": e.msg,
        "details": e.details,
        "stage": e.stage,
        "timestamp": datetime.now().isoformat(timespec="seconds"),
        "email": (data.get("email") or "").strip().lower() or None,
        "role": data.get("role"),
    }), e.status

@app.route("/api/admin/usuarios", methods=["POST"])
def api_admin_usuarios_create():
    """Sem login só funciona enquanto não existir nenhum admin (bootstrap)."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Invalid JSON body", "stage": "validation"}), 400
    try:
        with get_conn() as conn:
            res = criar_usuario(conn, data, session.get("user_id"))
    except ProvisionamentoErro as e:
        log.warning("[admin-users] falha stage=%s status=%s", e.stage, e.status)
        return _provisionamento_erro(e, data)
    return jsonify(res), 200

@app.route("/api/colaboradores", methods=["GET"])
@login_required
@require_permission("users", "read")
def api_colaboradores_list():
    ativo, erro = _arg_ativo()
    if erro:
        return erro
    q = request.args.get("q")
    sql = "SELECT * FROM colaboradores WHERE 1=1"
    params: List[Any] = []
    if ativo is not None:
        sql += " AND ativo=?"
        params.append(ativo)
    if q:
        like = f"%{q}%"
        sql += " AND (nome LIKE ? OR cpf LIKE ? OR email LIKE ? OR cargo LIKE ?)"
        params.extend([like, like, like, like])
    sql += " ORDER BY nome ASC"
    with get_conn() as conn:
        rows = conn.execute(sql, params).fetchall()
        return jsonify([dict(r) for r in rows])

@app.route("/api/colaboradores", methods=["POST"])
@login_required
@require_permission("users", "create")
def api_colaboradores_create():
    d = request.json or {}
    nome = (d.get("nome") or "").strip()
    cpf = only_digits(d.get("cpf") or "")
    email = (d.get("email") or "").strip().lower()
    role = (d.get("role") or "comercial").strip()
    if not nome or not cpf or not email:
        return bad_request("Preencha os campos obrigatórios: nome, cpf, email")
    if len(cpf) != 11:
        return bad_request("CPF inválido (precisa ter 11 dígitos).")
    if role not in ("logistics", "comercial", "admin"):
        return bad_request("role inválido")

    try:
        with get_conn() as conn:
            usuario_id = senha = None
            # comercial não tem papel no sistema; os demais recebem login com senha gerada
            if role in ("logistics", "admin"):
                senha = secrets.token_urlsafe(9)
                res = criar_usuario(conn, {"email": email, "password": senha,
                                           "nome": nome, "role": role}, session.get("user_id"))
                usuario_id = res["user_id"]
            cur = conn.execute("""
                INSERT INTO colaboradores (nome, cpf, email, telefone, cargo, departamento, role, usuario_id)
                VALUES (?,?,?,?,?,?,?,?)
            """, (nome, cpf, email, (d.get("telefone") or "").strip() or None,
                  (d.get("cargo") or "").strip() or None, (d.get("departamento") or "").strip() or None,
                  role, usuario_id))
            row = conn.execute("SELECT * FROM colaboradores WHERE id=?", (cur.lastrowid,)).fetchone()
            # a senha só aparece nesta resposta
            return jsonify({**dict(row), "senha": senha}), 201
    except ProvisionamentoErro as e:
        return _provisionamento_erro(e, d)
    except sqlite3.IntegrityError as e:
        # CPF UNIQUE etc. (a transação inteira, inclusive o usuário criado, é desfeita)
        return bad_request("Falha ao inserir colaborador (violação de restrição).", {"detail": str(e)})

@app.route("/api/colaboradores/<int:cid>/ativo", methods=["POST"])
@login_required
@require_permission("users", "update")
def api_colaboradores_toggle(cid: int):
    with get_conn() as conn:
        ex = conn.execute("SELECT id, ativo, usuario_id FROM colaboradores WHERE id=?", (cid,)).fetchone()
        if not ex:
            return jsonify({"error": "colaborador não encontrado"}), 404
        novo = 0 if ex["ativo"] else 1
        conn.execute("UPDATE colaboradores SET ativo=?, updated_at=? WHERE id=?",
                     (novo, datetime.now().isoformat(timespec="seconds"), cid))
        if ex["usuario_id"]:
            conn.execute("UPDATE usuarios SET ativo=? WHERE id=?", (novo, ex["usuario_id"]))
        row = conn.execute("SELECT * FROM colaboradores WHERE id=?", (cid,)).fetchone()
        return jsonify(dict(row))

# ==========================
# LOGIN / SESSÃO (Páginas)
# ==========================
@app.route("/login", methods=["GET", "POST"])
def login():
    if request.method == "GET":
        return render_template("login.html")

    email = request.form.get("email", "").strip().lower()
    password = request.form.get("password", "")
    with get_conn() as conn:
        row = conn.execute("SELECT * FROM usuarios WHERE email=? AND ativo=1", (email,)).fetchone()
        if not row or not check_password_hash(row["senha_hash"], password):
            log.info("Login recusado para %s", email)
            return render_template("login.html", error="Credenciais inválidas."), 401

        session.clear()
        session["user_id"] = row["id"]
        session["user_email"] = row["email"]
        session["user_nome"] = row["nome"]
        return redirect(url_for("carregamentos_page"))

@app.route("/logout", methods=["POST", "GET"])
def logout():
    session.clear()
    return redirect(url_for("login"))

# (opcional) rota de diagnóstico
@app.get("/__routes__")
def __routes__():
    linhas = []
    for r in sorted(app.url_map.iter_rules(), key=lambda x: x.rule):
        linhas.append(f"{r.endpoint:25s}  {','.join(sorted(r.methods - {'HEAD','OPTIONS'})) or '-':10s}  {r.rule}")
    return "<pre>" + "\n".join(linhas) + "</pre>"

@app.get("/__dbdiag__")
@login_required
@require_roles("admin")
def __dbdiag__():
    with get_conn() as conn:
        tabs = [r["name"] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()]
    return jsonify({"db_path": DB_PATH, "tables": tabs})

# ==========================
# MAIN
# ==========================
if __name__ == "__main__":
    app.run(debug=True)
