from sqlalchemy import select

from printshop.config import settings
from printshop.db import SessionLocal, init_models
from printshop.logging_config import get_logger, setup_logging
from printshop.models import Principal, PrincipalRole

logger = get_logger(__name__)

DEMO_PRINCIPALS = [
    ('intake@demo.com', 'Demo Intake', PrincipalRole.INTAKE),
    ('cashier@demo.com', 'Demo Cashier', PrincipalRole.CASHIER),
    ('operator@demo.com', 'Demo Operator', PrincipalRole.OPERATOR),
]


def seed(session_factory=SessionLocal) -> int:
    created = 0
    with session_factory() as db:
        for identity, full_name, role in DEMO_PRINCIPALS:
            principal = db.execute(select(Principal).where(Principal.identity == identity)).scalar_one_or_none()
            if not principal:
                db.add(Principal(identity=identity, full_name=full_name, role=role, active=True))
                created += 1
            else:
                principal.role = role
                principal.active = True
        db.commit()
    return created


def main() -> None:
    setup_logging(settings.service_name, settings.log_level)
    init_models()
    created = seed()
    logger.info('Seed complete', extra={'extra_fields': {'principals_created': created}})


if __name__ == '__main__':
    main()
