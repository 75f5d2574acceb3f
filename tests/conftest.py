import os
import tempfile
import pytest
from werkzeug.security import generate_password_hash

"""Fixtures de teste.

Notas:
 - O banco temporário é apontado via APP_DB_PATH ANTES de qualquer import de
   db/app (o módulo db lê a variável no import e app chama bootstrap_db na
   subida). Por isso o ajuste fica no topo deste arquivo e não numa fixture.
 - app_client e seed têm escopo de sessão (um único banco para os testes de
   API). Cada teste faz login explícito com login_as, já que a sessão do
   client é compartilhada.
 - Testes de regra (fluxo/usuarios) que precisam de banco vazio usam a
   fixture banco, que troca db.DB_PATH por um arquivo em tmp_path.
"""

_TMP = tempfile.TemporaryDirectory()
os.environ['APP_DB_PATH'] = os.path.join(_TMP.name, 'test.db')
os.environ['APP_UPLOAD_DIR'] = os.path.join(_TMP.name, 'uploads')
os.environ.pop('APP_PREVIEW_ETAPAS', None)


class FakeStorage:
  """Storage em memória; falhar=True simula indisponibilidade do backend."""

  def __init__(self, falhar=False, erro=None):
    self.falhar = falhar
    self.erro = erro
    self.uploads = []

  def upload(self, conteudo, destino):
    from storage import StorageFailure
    if self.erro is not None:
      raise self.erro
    if self.falhar:
      raise StorageFailure("backend indisponível")
    self.uploads.append((destino, conteudo))
    return f"/uploads/fake/{len(self.uploads)}/{destino.rsplit('/', 1)[-1]}"


def criar_usuario_db(conn, email, roles, armazem_id=None, cliente_id=None, senha='S3nha-forte!'):
  cur = conn.execute(
    "INSERT INTO usuarios (nome, email, senha_hash, armazem_id, cliente_id, ativo) VALUES (?,?,?,?,?,1)",
    (email.split('@')[0], email, generate_password_hash(senha), armazem_id, cliente_id)
  )
  uid = cur.lastrowid
  for r in roles:
    conn.execute("INSERT INTO user_roles (usuario_id, role) VALUES (?,?)", (uid, r))
  return uid


def popular_basico(conn):
  """Dois clientes, dois armazéns e um usuário por papel."""
  ids = {}
  ids['cliente_a'] = conn.execute("INSERT INTO clientes (nome) VALUES ('Cliente A')").lastrowid
  ids['cliente_b'] = conn.execute("INSERT INTO clientes (nome) VALUES ('Cliente B')").lastrowid
  ids['armazem_x'] = conn.execute(
    "INSERT INTO armazens (nome, cidade, estado) VALUES ('Armazém X','Rondonópolis','MT')").lastrowid
  ids['armazem_y'] = conn.execute(
    "INSERT INTO armazens (nome, cidade, estado) VALUES ('Armazém Y','Sorriso','MT')").lastrowid
  ids['admin'] = criar_usuario_db(conn, 'admin@example.com', ['admin'])
  ids['logistica'] = criar_usuario_db(conn, 'log@example.com', ['logistics'])
  ids['armazem'] = criar_usuario_db(conn, 'arm.x@example.com', ['warehouse'], armazem_id=ids['armazem_x'])
  ids['armazem_outro'] = criar_usuario_db(conn, 'arm.y@example.com', ['warehouse'], armazem_id=ids['armazem_y'])
  ids['cliente'] = criar_usuario_db(conn, 'cli.a@example.com', ['client'], cliente_id=ids['cliente_a'])
  ids['cliente_outro'] = criar_usuario_db(conn, 'cli.b@example.com', ['client'], cliente_id=ids['cliente_b'])
  return ids


@pytest.fixture(scope="session")
def app_module():
  # Importa app uma única vez; DB_PATH já aponta para o temp antes do import
  import app as app_module  # type: ignore
  return app_module


@pytest.fixture(scope="session")
def app_client(app_module):
  client = app_module.app.test_client()
  yield client
  _TMP.cleanup()


@pytest.fixture(scope="session")
def seed(app_module):
  import db
  with db.get_conn() as conn:
    return popular_basico(conn)


@pytest.fixture
def login_as(app_client):
  def _login(user_id):
    with app_client.session_transaction() as sess:
      sess.clear()
      if user_id is not None:
        sess['user_id'] = user_id
    return app_client
  return _login


@pytest.fixture
def fake_storage(app_module, monkeypatch):
  fs = FakeStorage()
  monkeypatch.setitem(app_module.app.config, "STORAGE", fs)
  return fs


@pytest.fixture
def novo_carregamento(seed):
  """Cria um carregamento (cliente A / armazém X por padrão) já na etapa pedida."""
  import db
  from fluxo import criar_carregamento
  from etapas import status_para_etapa

  def _novo(etapa_atual=0, cliente=None, armazem=None, status=None):
    with db.get_conn() as conn:
      row = criar_carregamento(conn, cliente or seed['cliente_a'], armazem or seed['armazem_x'], seed['admin'])
      conn.execute("UPDATE carregamentos SET etapa_atual=?, status=? WHERE id=?",
                   (etapa_atual, status or status_para_etapa(etapa_atual), row['id']))
      return row['id']
  return _novo


@pytest.fixture
def banco(tmp_path, monkeypatch):
  """Banco novo e vazio (schema + permissões) isolado por teste."""
  import db
  monkeypatch.setattr(db, "DB_PATH", str(tmp_path / "isolado.db"))
  db.bootstrap_db()
  return db


@pytest.fixture
def banco_populado(banco):
  with banco.get_conn() as conn:
    ids = popular_basico(conn)
  return banco, ids
