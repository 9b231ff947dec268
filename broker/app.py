# broker/app.py
from wsgiref.simple_server import make_server
import json
import logging
import re

from broker.config import ConfigService
from broker.database.database import SessionLocal
from broker.database.db_init import initialize_db
from broker.repositories.sqlalchemy import (
    SqlalchemyMachineRepository,
    SqlalchemyImageRepository,
    SqlalchemyBrokerLogRepository,
    SqlalchemyUserRepository,
)
from broker.services.audit_service import AuditService
from broker.services.image_service import ImageService
from broker.services.machine_service import MachineService
from broker.services.session_probe import create_session_probe
from broker.utils.logging import setup_logging
from broker.services.exceptions import (
    NotInitialized,
    AlreadyInitialized,
    CreditExceeded,
    NoMachineAvailable,
    MachineStarting,
    MachineTransitioning,
    UnsupportedOperation,
    PollTimeout,
    UpstreamDriverError,
    MachineNotFoundError,
    UserNotFoundError,
    ImageNotFoundError,
)

logger = logging.getLogger(__name__)

# --------------------------------------------------------------------------
## 서비스 구성
# --------------------------------------------------------------------------

def build_services(config: ConfigService = None, session_factory=SessionLocal) -> dict:
    """
    리포지토리와 서비스를 한 번만 생성합니다.
    MachineService는 드라이버와 백그라운드 작업을 소유하므로 프로세스당 하나만 존재해야 합니다.
    """
    config = config or ConfigService()

    machine_repo = SqlalchemyMachineRepository(session_factory)
    image_repo = SqlalchemyImageRepository(session_factory)
    log_repo = SqlalchemyBrokerLogRepository(session_factory)
    user_repo = SqlalchemyUserRepository(session_factory)

    image_service = ImageService(image_repo)
    audit_service = AuditService(log_repo, machine_repo)
    machine_service = MachineService(
        machine_repo,
        user_repo,
        image_service,
        audit_service,
        config,
        session_probe=create_session_probe(config.settings),
    )

    return {
        'machine': machine_service,
        'image': image_service,
        'audit': audit_service,
        'machines': machine_repo,
        'users': user_repo,
    }

# --------------------------------------------------------------------------
## 요청 처리 유틸리티 함수
# --------------------------------------------------------------------------

def get_request_data(environ):
    try:
        content_length = int(environ.get("CONTENT_LENGTH") or 0)
        return json.loads(environ["wsgi.input"].read(content_length)) if content_length > 0 else {}
    except (ValueError, json.JSONDecodeError):
        raise ValueError("Invalid or missing JSON body.")

def get_user(environ, user_id):
    user = environ['services']['users'].find_by_id(user_id)
    if not user:
        raise UserNotFoundError(f"User '{user_id}' not found.")
    return user

def get_machine(environ, machine_id):
    machine = environ['services']['machines'].find_by_id(machine_id)
    if not machine:
        raise MachineNotFoundError(f"Machine '{machine_id}' not found.")
    return machine

def handle_exception(e):
    error_map = {
        CreditExceeded: "402 Payment Required",
        NoMachineAvailable: "503 Service Unavailable",
        MachineStarting: "503 Service Unavailable",
        MachineTransitioning: "409 Conflict",
        UnsupportedOperation: "501 Not Implemented",
        PollTimeout: "504 Gateway Timeout",
        UpstreamDriverError: "502 Bad Gateway",
        NotInitialized: "503 Service Unavailable",
        AlreadyInitialized: "409 Conflict",
        MachineNotFoundError: "404 Not Found",
        UserNotFoundError: "404 Not Found",
        ImageNotFoundError: "404 Not Found",
        ValueError: "400 Bad Request",
    }
    status = error_map.get(type(e), "500 Internal Server Error")
    if status.startswith("500"):
        logger.exception("Unhandled error while serving request")
    return status, json.dumps({"error": str(e)})

# --------------------------------------------------------------------------
## WSGI 애플리케이션 (라우팅)
# --------------------------------------------------------------------------

def create_app(services: dict):
    """services 딕셔너리를 모든 요청의 environ에 주입하는 WSGI 애플리케이션을 만듭니다."""

    def application(environ, start_response):
        try:
            environ['services'] = services

            path = environ.get("PATH_INFO", "")
            method = environ.get("REQUEST_METHOD", "")

            routes = [
                ('GET', r'^/v1/machines$', list_machines_handler),
                ('POST', r'^/v1/machines/([a-zA-Z0-9_-]+)/(start|stop|reboot)$', machine_action_handler),
                ('GET', r'^/v1/users/([a-zA-Z0-9_-]+)/machine$', get_user_machine_handler),
                ('POST', r'^/v1/users/([a-zA-Z0-9_-]+)/sessions$', open_session_handler),
                ('DELETE', r'^/v1/users/([a-zA-Z0-9_-]+)/sessions$', end_session_handler),
                ('POST', r'^/v1/actions/pool-update$', pool_update_handler),
                ('GET', r'^/v1/images/default$', get_default_image_handler),
                ('POST', r'^/v1/images$', create_image_handler),
                ('GET', r'^/v1/driver$', driver_handler),
            ]

            handler, path_args = None, []
            for route_method, pattern, route_handler in routes:
                if method == route_method and (match := re.match(pattern, path)):
                    handler, path_args = route_handler, match.groups()
                    break

            if handler:
                status, response_body = handler(environ, *path_args)
            else:
                status, response_body = '404 Not Found', json.dumps({'error': 'Not Found'})

        except Exception as e:
            status, response_body = handle_exception(e)

        start_response(status, [("Content-Type", "application/json")])
        return [response_body.encode("utf-8")]

    return application

# --------------------------------------------------------------------------
## 핸들러 함수
# --------------------------------------------------------------------------

def machine_to_response(machine):
    data = machine.to_dict()
    data['password'] = machine.password
    return data

def list_machines_handler(environ, *args):
    machines = environ['services']['machine'].list_machines()
    return '200 OK', json.dumps({'machines': machines})

def machine_action_handler(environ, machine_id, action):
    machine_service = environ['services']['machine']
    machine = get_machine(environ, machine_id)
    operations = {
        'start': machine_service.start_machine,
        'stop': machine_service.stop_machine,
        'reboot': machine_service.reboot_machine,
    }
    machine = operations[action](machine)
    return '200 OK', json.dumps(machine_to_response(machine))

def get_user_machine_handler(environ, user_id):
    user = get_user(environ, user_id)
    machine = environ['services']['machine'].get_machine_for_user(user)
    return '200 OK', json.dumps(machine_to_response(machine))

def open_session_handler(environ, user_id):
    user = get_user(environ, user_id)
    machine = environ['services']['machine'].session_open(user)
    return '201 Created', json.dumps(machine_to_response(machine))

def end_session_handler(environ, user_id):
    user = get_user(environ, user_id)
    machine = environ['services']['machine'].session_ended(user)
    return '200 OK', json.dumps({"machine_id": machine.id,
                                 "end_date": machine.end_date.isoformat() if machine.end_date else None})

def pool_update_handler(environ, *args):
    delta = environ['services']['machine'].update_machines_pool()
    if delta is None:
        return '500 Internal Server Error', json.dumps({"error": "Error while updating the pool"})
    return '200 OK', json.dumps({"delta": delta})

def get_default_image_handler(environ, *args):
    image = environ['services']['machine'].get_default_image()
    return '200 OK', json.dumps({
        "id": image.id, "name": image.name, "provider_id": image.provider_id,
        "build_from": image.build_from, "is_default": image.is_default,
    })

def create_image_handler(environ, *args):
    data = get_request_data(environ)
    if not data.get('name'):
        raise ValueError("Field 'name' is required.")

    image_info = environ['services']['machine'].create_image(data)
    image = environ['services']['image'].register_image(
        name=image_info.name,
        provider_id=image_info.provider_id,
        build_from=image_info.build_from,
        make_default=bool(data.get('default', False)),
    )
    return '201 Created', json.dumps({"id": image.id, "name": image.name, "provider_id": image.provider_id,
                                      "is_default": image.is_default})

def driver_handler(environ, *args):
    return '200 OK', json.dumps({"driver": environ['services']['machine'].driver_name()})

# --------------------------------------------------------------------------
## 서버 실행
# --------------------------------------------------------------------------

def main(host: str = "", port: int = 8000):
    config = ConfigService()
    setup_logging(config.get("log_level"))
    initialize_db()

    services = build_services(config)
    services['machine'].initialize()

    try:
        with make_server(host, port, create_app(services)) as httpd:
            logger.info("Serving machine broker on port %d", port)
            httpd.serve_forever()
    finally:
        services['machine'].shutdown()


if __name__ == "__main__":
    main()
