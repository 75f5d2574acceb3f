import io

# Objetivo: fluxo de etapas pela API (multipart), visão por papel e redirecionamentos


def _foto(nome='foto.jpg'):
    return (io.BytesIO(b'\xff\xd8img'), nome)


def _pdf(nome='nota.pdf'):
    return (io.BytesIO(b'%PDF-1.4'), nome)


def _avancar(client, cid, etapa, **data):
    return client.post(f"/api/carregamentos/{cid}/etapas/{etapa}", data=data,
                       content_type='multipart/form-data')


def test_sem_login_401(app_client, login_as, seed):
    login_as(None)
    assert app_client.get('/api/carregamentos').status_code == 401
    r = app_client.get('/carregamentos')
    assert r.status_code == 302 and '/login' in r.headers['Location']


def test_agendar_somente_elevados(login_as, seed):
    c = login_as(seed['armazem'])
    r = c.post('/api/carregamentos', json={'cliente_id': seed['cliente_a'], 'armazem_id': seed['armazem_x']})
    assert r.status_code == 403

    c = login_as(seed['logistica'])
    r = c.post('/api/carregamentos', json={'cliente_id': seed['cliente_a'], 'armazem_id': seed['armazem_x'],
                                           'placa': 'abc1d23'})
    assert r.status_code == 201
    j = r.get_json()
    assert j['currentStage'] == 0 and j['status'] == 'awaiting'
    assert c.get(f"/api/carregamentos/{j['id']}").get_json()['placa'] == 'ABC1D23'

    r = c.post('/api/carregamentos', json={'cliente_id': seed['cliente_a']})
    assert r.status_code == 400
    r = c.post('/api/carregamentos', json={'cliente_id': 99999, 'armazem_id': seed['armazem_x']})
    assert r.status_code == 400


def test_lista_filtrada_por_papel(login_as, seed, novo_carregamento):
    do_x = novo_carregamento(1)
    do_y = novo_carregamento(1, cliente=seed['cliente_b'], armazem=seed['armazem_y'])

    ids = {c['id'] for c in login_as(seed['armazem']).get('/api/carregamentos').get_json()}
    assert do_x in ids and do_y not in ids

    ids = {c['id'] for c in login_as(seed['cliente_outro']).get('/api/carregamentos').get_json()}
    assert do_y in ids and do_x not in ids

    ids = {c['id'] for c in login_as(seed['admin']).get('/api/carregamentos').get_json()}
    assert {do_x, do_y} <= ids

    lista = login_as(seed['admin']).get('/api/carregamentos?status=in_progress').get_json()
    assert all(c['status'] == 'in_progress' for c in lista)


def test_detalhe_armazem_etapa_2(login_as, seed, novo_carregamento):
    cid = novo_carregamento(2)
    j = login_as(seed['armazem']).get(f'/api/carregamentos/{cid}').get_json()
    assert j['etapa_selecionada'] == 3
    assert j['visao_selecionada'] == 'EDITABLE'
    assert [e['ordem'] for e in j['etapas'] if e['pode_visualizar']] == [1, 2, 3]
    assert [e['ordem'] for e in j['etapas'] if e['pode_editar']] == [3]
    assert j['tempo_decorrido_min'] is not None


def test_detalhe_cliente_so_historico(login_as, seed, novo_carregamento):
    cid = novo_carregamento(4)
    c = login_as(seed['cliente'])
    j = c.get(f'/api/carregamentos/{cid}').get_json()
    assert [e['ordem'] for e in j['etapas'] if e['pode_visualizar']] == [1, 2, 3, 4]
    assert not any(e['pode_editar'] for e in j['etapas'])
    # pedir uma etapa futura cai na etapa inicial
    j = c.get(f'/api/carregamentos/{cid}?etapa=5').get_json()
    assert j['etapa_selecionada'] == 4
    assert j['visao_selecionada'] == 'COMPLETED'


def test_sem_vinculo_redireciona(login_as, seed, novo_carregamento):
    cid = novo_carregamento(1)
    c = login_as(seed['armazem_outro'])
    r = c.get(f'/api/carregamentos/{cid}')
    assert r.status_code == 403
    assert r.get_json()['redirect'].endswith('/carregamentos')
    r = c.get(f'/carregamentos/{cid}')
    assert r.status_code == 302 and r.headers['Location'].endswith('/carregamentos')
    r = _avancar(c, cid, 2, anexo=_foto())
    assert r.status_code == 403


def test_inexistente_404(login_as, seed):
    c = login_as(seed['admin'])
    r = c.get('/api/carregamentos/999999')
    assert r.status_code == 404
    assert r.get_json()['codigo'] == 'NOT_FOUND'


def test_avanco_completo_pela_api(login_as, seed, novo_carregamento, fake_storage):
    cid = novo_carregamento(0)
    c = login_as(seed['armazem'])
    for n in range(1, 5):
        r = _avancar(c, cid, n, anexo=_foto(), observacao=f'etapa {n}')
        assert r.status_code == 200, r.get_data(as_text=True)
        assert r.get_json()['carregamento']['currentStage'] == n
    r = _avancar(c, cid, 5, anexo=_pdf(), anexo_xml=(io.BytesIO(b'<nfe/>'), 'nota.xml'))
    assert r.status_code == 200
    j = r.get_json()
    assert j['carregamento']['currentStage'] == 6
    assert j['carregamento']['status'] == 'finalized'
    assert j['carregamento']['stage5']['secondaryAttachmentUrl']
    assert len(fake_storage.uploads) == 6

    j = login_as(seed['cliente']).get(f'/api/carregamentos/{cid}').get_json()
    assert j['visao_selecionada'] == 'FINAL'
    assert [e['ordem'] for e in j['etapas'] if e['pode_visualizar']] == [1, 2, 3, 4, 5, 6]


def test_erros_do_avanco_preservam_rascunho(login_as, seed, novo_carregamento, fake_storage):
    cid = novo_carregamento(0)
    c = login_as(seed['admin'])

    r = _avancar(c, cid, 1, observacao='chegou cedo')
    assert r.status_code == 400
    j = r.get_json()
    assert j['codigo'] == 'MISSING_ATTACHMENT'
    assert j['rascunho']['observacao'] == 'chegou cedo'

    r = _avancar(c, cid, 1, anexo=_pdf(), observacao='chegou cedo')
    assert r.get_json()['codigo'] == 'WRONG_ATTACHMENT_TYPE'
    assert r.get_json()['rascunho']['nome_anexo'] == 'nota.pdf'

    r = _avancar(c, cid, 3, anexo=_foto())
    assert r.status_code == 409
    assert r.get_json()['codigo'] == 'OUT_OF_SEQUENCE'

    assert fake_storage.uploads == []
    assert c.get(f'/api/carregamentos/{cid}').get_json()['carregamento']['currentStage'] == 0


def test_falha_de_storage_pela_api(login_as, seed, novo_carregamento, fake_storage):
    cid = novo_carregamento(0)
    fake_storage.falhar = True
    c = login_as(seed['admin'])
    r = _avancar(c, cid, 1, anexo=_foto(), observacao='tentativa')
    assert r.status_code == 502
    assert r.get_json()['codigo'] == 'STORAGE_FAILURE'
    assert r.get_json()['rascunho']['observacao'] == 'tentativa'
    assert c.get(f'/api/carregamentos/{cid}').get_json()['carregamento']['currentStage'] == 0


def test_cliente_nao_avanca_pela_api(login_as, seed, novo_carregamento, fake_storage):
    cid = novo_carregamento(0)
    r = _avancar(login_as(seed['cliente']), cid, 1, anexo=_foto())
    assert r.status_code == 403
    assert r.get_json()['codigo'] == 'FORBIDDEN'


def test_preview_relaxado(app_module, monkeypatch, login_as, seed, novo_carregamento):
    cid = novo_carregamento(1)
    monkeypatch.setitem(app_module.app.config, 'PREVIEW_ETAPAS', True)
    j = login_as(seed['cliente']).get(f'/api/carregamentos/{cid}').get_json()
    assert all(e['pode_visualizar'] for e in j['etapas'])
    assert not any(e['pode_editar'] for e in j['etapas'])
    assert login_as(seed['cliente_outro']).get(f'/api/carregamentos/{cid}').status_code == 403


def test_cancelar(login_as, seed, novo_carregamento, fake_storage):
    cid = novo_carregamento(2)
    assert login_as(seed['armazem']).post(f'/api/carregamentos/{cid}/cancelar').status_code == 403
    c = login_as(seed['logistica'])
    r = c.post(f'/api/carregamentos/{cid}/cancelar', json={'motivo': 'chuva'})
    assert r.status_code == 200
    assert r.get_json()['status'] == 'cancelled'
    assert c.post(f'/api/carregamentos/{cid}/cancelar').status_code == 400
    r = _avancar(login_as(seed['armazem']), cid, 3, anexo=_foto())
    assert r.get_json()['codigo'] == 'FORBIDDEN'


def test_pagina_detalhe_e_form(login_as, seed, novo_carregamento, fake_storage):
    cid = novo_carregamento(0)
    c = login_as(seed['armazem'])
    r = c.get(f'/carregamentos/{cid}')
    assert r.status_code == 200
    assert 'name="anexo"' in r.get_data(as_text=True)

    # erro mantém a observação digitada no formulário
    r = c.post(f'/carregamentos/{cid}/etapas/1', data={'observacao': 'placa divergente'},
               content_type='multipart/form-data')
    assert r.status_code == 400
    assert 'placa divergente' in r.get_data(as_text=True)

    r = c.post(f'/carregamentos/{cid}/etapas/1', data={'observacao': 'ok', 'anexo': _foto()},
               content_type='multipart/form-data')
    assert r.status_code == 302
    assert c.get(f'/api/carregamentos/{cid}').get_json()['carregamento']['currentStage'] == 1
