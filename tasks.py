"""tasks.py - automação local do projeto de carregamentos.

Uso rápido:
  python tasks.py run                       -> inicia app Flask (debug)
  python tasks.py test [-v ...]             -> roda pytest (silencioso por padrão)
  python tasks.py ci                        -> roda os testes e falha se !=0
  python tasks.py init-db                   -> cria/migra o banco em APP_DB_PATH
  python tasks.py create-admin EMAIL NOME   -> cria o primeiro admin (senha via ADMIN_PASSWORD ou prompt)

Sem dependência externa (invoke/fabric); só subprocess e os módulos do app.
"""
from __future__ import annotations
import subprocess, sys, pathlib, os, getpass

ROOT = pathlib.Path(__file__).parent


def _run(cmd: list[str], check=True):
    print(f"[run] {' '.join(cmd)}")
    r = subprocess.run(cmd, cwd=ROOT)
    if check and r.returncode != 0:
        sys.exit(r.returncode)


def task_run(args: list[str]):
    _run([sys.executable, 'app.py'])


def task_test(args: list[str]):
    cmd = [sys.executable, '-m', 'pytest'] + (args or ['-q'])
    _run(cmd)


def task_ci(args: list[str]):
    task_test(['-q'])


def task_init_db(args: list[str]):
    import db
    db.bootstrap_db()
    print(f"Banco pronto em {db.DB_PATH}")


def task_create_admin(args: list[str]):
    if len(args) < 2:
        print("Uso: python tasks.py create-admin EMAIL NOME")
        raise SystemExit(1)
    import db
    from usuarios import ProvisionamentoErro, criar_usuario

    senha = os.environ.get('ADMIN_PASSWORD') or getpass.getpass('Senha: ')
    db.bootstrap_db()
    try:
        with db.get_conn() as conn:
            res = criar_usuario(conn, {'email': args[0], 'nome': ' '.join(args[1:]),
                                       'password': senha, 'role': 'admin'})
    except ProvisionamentoErro as e:
        print(f"Falha ({e.stage}): {e.msg} {e.details or ''}")
        raise SystemExit(3)
    print(f"Admin criado: id={res['user_id']} email={res['email']}")


TASKS = {
    'run': task_run,
    'test': task_test,
    'ci': task_ci,
    'init-db': task_init_db,
    'create-admin': task_create_admin,
}


def main():
    if len(sys.argv) < 2:
        print("Uso: python tasks.py <task> [args...]")
        print("Tasks disponíveis:", ', '.join(TASKS))
        raise SystemExit(1)
    task = sys.argv[1]
    fn = TASKS.get(task)
    if not fn:
        print(f"Task desconhecida: {task}")
        raise SystemExit(2)
    fn(sys.argv[2:])


if __name__ == '__main__':
    main()
