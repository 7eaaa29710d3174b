# 📄 alembic/env.py
# 마이그레이션 실행 환경: 재고 할당 엔진 테이블(stock_variants / stock_movements / order_*)
# DB 접속 정보는 앱과 같은 inventory_allocation.system.config.DB_URL_SYNC 를 쓴다 (.env 포함)

from __future__ import annotations

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from inventory_allocation.models import Base
from inventory_allocation.system.config import DB_URL_SYNC

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# alembic.ini 의 값보다 앱 설정이 우선
config.set_main_option("sqlalchemy.url", DB_URL_SYNC.replace("%", "%%"))


def _configure(**kwargs) -> None:
    context.configure(target_metadata=Base.metadata, compare_type=True, **kwargs)


if context.is_offline_mode():
    # --sql : DDL 스크립트만 출력
    _configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()
else:
    engine = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with engine.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()
