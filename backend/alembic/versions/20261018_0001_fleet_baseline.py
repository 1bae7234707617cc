"""fleet baseline schema

Revision ID: 20261018_0001
Revises: 
Create Date: 2026-10-18 09:00:00
"""

from typing import Sequence, Union

from alembic import op

from mirror_fleet.db import Base
from mirror_fleet import models  # noqa: F401


# revision identifiers, used by Alembic.
revision: str = "20261018_0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # includes the partial unique indexes uq_outbound_open_device and uq_exclusive_code_instance
    Base.metadata.create_all(bind=op.get_bind())


def downgrade() -> None:
    Base.metadata.drop_all(bind=op.get_bind())
