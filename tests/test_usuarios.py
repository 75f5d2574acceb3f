import pytest
from werkzeug.security import check_password_hash

from usuarios import ProvisionamentoErro, criar_usuario


def _dados(**extra):
    d = {'email': 'novo@example.com', 'password': 'Um4-senha-boa', 'nome': 'Fulano', 'role': 'admin'}
    d.update(extra)
    return d


def test_primeiro_admin_bootstrap(banco):
    with banco.get_conn() as conn:
        with pytest.raises(ProvisionamentoErro) as exc:
            criar_usuario(conn, _dados(role='logistics'))
        assert exc.value.stage == 'adminCheck'

        res = criar_usuario(conn, _dados())
        assert res['success'] and res['first_admin_bootstrap']
        row = conn.execute("SELECT * FROM usuarios WHERE id=?", (res['user_id'],)).fetchone()
        assert check_password_hash(row['senha_hash'], 'Um4-senha-boa')

        # depois do primeiro admin, precisa de sessão admin
        with pytest.raises(ProvisionamentoErro) as exc:
            criar_usuario(conn, _dados(email='outro@example.com'))
        assert exc.value.status == 401

        res2 = criar_usuario(conn, _dados(email='log@example.com', role='logistics'), res['user_id'])
        assert not res2['first_admin_bootstrap']
        with pytest.raises(ProvisionamentoErro) as exc:
            criar_usuario(conn, _dados(email='x@example.com'), res2['user_id'])
        assert exc.value.status == 403


def test_validacoes(banco_populado):
    db, ids = banco_populado
    with db.get_conn() as conn:
        with pytest.raises(ProvisionamentoErro) as exc:
            criar_usuario(conn, _dados(email='sem-arroba', nome='A', role='chefe'), ids['admin'])
        assert exc.value.stage == 'validation'
        assert set(exc.value.details) == {'email', 'nome', 'role'}

        with pytest.raises(ProvisionamentoErro) as exc:
            criar_usuario(conn, _dados(password='12345678'), ids['admin'])
        assert exc.value.msg == 'Weak password'

        with pytest.raises(ProvisionamentoErro) as exc:
            criar_usuario(conn, _dados(role='warehouse'), ids['admin'])
        assert 'armazem_id' in exc.value.details

        with pytest.raises(ProvisionamentoErro) as exc:
            criar_usuario(conn, _dados(email='admin@example.com'), ids['admin'])
        assert (exc.value.stage, exc.value.status) == ('createUser', 409)


def test_papel_warehouse_vinculado(banco_populado):
    db, ids = banco_populado
    with db.get_conn() as conn:
        res = criar_usuario(conn, _dados(email='arm2@example.com', role='warehouse',
                                         armazem_id=ids['armazem_y'], cliente_id=ids['cliente_a']),
                            ids['admin'])
        row = conn.execute("SELECT armazem_id, cliente_id FROM usuarios WHERE id=?", (res['user_id'],)).fetchone()
        assert row['armazem_id'] == ids['armazem_y']
        # cliente_id é ignorado para quem não é client
        assert row['cliente_id'] is None


def test_api_admin_usuarios(login_as, seed):
    c = login_as(seed['logistica'])
    r = c.post('/api/admin/usuarios', json=_dados(email='api@example.com'))
    assert r.status_code == 403
    assert r.get_json()['stage'] == 'adminCheck'

    c = login_as(seed['admin'])
    r = c.post('/api/admin/usuarios', json=_dados(email='api@example.com', role='client',
                                                  cliente_id=seed['cliente_b']))
    assert r.status_code == 200
    assert r.get_json()['role'] == 'client'
    assert c.post('/api/admin/usuarios', data='nada').status_code == 400


def test_login_logout(app_client, seed):
    app_client.get('/logout')
    r = app_client.post('/login', data={'email': 'arm.x@example.com', 'password': 'errada'})
    assert r.status_code == 401
    r = app_client.post('/login', data={'email': 'ARM.X@example.com', 'password': 'S3nha-forte!'})
    assert r.status_code == 302
    with app_client.session_transaction() as sess:
        assert sess['user_id'] == seed['armazem']
    app_client.get('/logout')
    assert app_client.get('/api/carregamentos').status_code == 401


def test_colaboradores(login_as, seed, app_module):
    c = login_as(seed['admin'])
    r = c.post('/api/colaboradores', json={'nome': 'Beltrano', 'cpf': '123.456.789-01', 'role': 'logistics',
                                           'email': 'beltrano@example.com'})
    assert r.status_code == 201, r.get_data(as_text=True)
    col = r.get_json()
    assert col['cpf'] == '12345678901'
    assert col['usuario_id']
    senha = col['senha']
    assert len(senha) >= 12
    # a senha gerada abre sessão
    assert c.post('/login', data={'email': 'beltrano@example.com', 'password': senha}).status_code == 302

    c = login_as(seed['admin'])
    # CPF duplicado: nada é criado (nem o login)
    r = c.post('/api/colaboradores', json={'nome': 'Dup', 'cpf': '12345678901', 'role': 'logistics',
                                           'email': 'dup@example.com'})
    assert r.status_code == 400
    with app_module.get_conn() as conn:
        assert conn.execute("SELECT 1 FROM usuarios WHERE email='dup@example.com'").fetchone() is None

    c = login_as(seed['admin'])
    r = c.post(f"/api/colaboradores/{col['id']}/ativo")
    assert r.get_json()['ativo'] == 0
    # login vinculado também é desativado
    r = c.post('/login', data={'email': 'beltrano@example.com', 'password': senha})
    assert r.status_code == 401

    c = login_as(seed['admin'])
    nomes = [x['nome'] for x in c.get('/api/colaboradores?q=Belt').get_json()]
    assert nomes == ['Beltrano']
    assert login_as(seed['armazem']).get('/api/colaboradores').status_code == 403


def test_colaborador_campos_obrigatorios_e_comercial(login_as, seed):
    c = login_as(seed['admin'])
    base = {'nome': 'Ciclano', 'cpf': '98765432100', 'email': 'ciclano@example.com', 'role': 'comercial'}
    for falta in ('nome', 'cpf', 'email'):
        d = dict(base)
        d.pop(falta)
        assert c.post('/api/colaboradores', json=d).status_code == 400
    assert c.post('/api/colaboradores', json=dict(base, cpf='123')).status_code == 400

    # comercial fica sem login
    r = c.post('/api/colaboradores', json=base)
    assert r.status_code == 201
    assert r.get_json()['usuario_id'] is None
    assert r.get_json()['senha'] is None
