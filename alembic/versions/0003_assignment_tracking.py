from alembic import op
import sqlalchemy as sa

revision = '0003_assignment_tracking'
down_revision = '0002_couriers_notifications'
branch_labels = None
depends_on = None

def upgrade():
    op.add_column('orders', sa.Column('confirmed_by', sa.String(36), nullable=True))
    op.add_column('orders', sa.Column('assigned_at', sa.DateTime, nullable=True))
    op.add_column('orders', sa.Column('courier_accepted_at', sa.DateTime, nullable=True))
    op.add_column('orders', sa.Column('courier_arrived_at', sa.DateTime, nullable=True))
    op.add_column('orders', sa.Column('cancel_reason', sa.String(255), nullable=True))
    op.add_column('notifications', sa.Column('action', sa.String(50), nullable=True))
    op.add_column('notifications', sa.Column('dedup_key', sa.String(64), nullable=True))
    op.create_unique_constraint('uq_notifications_dedup_key', 'notifications', ['dedup_key'])

def downgrade():
    op.drop_constraint('uq_notifications_dedup_key', 'notifications', type_='unique')
    op.drop_column('notifications', 'dedup_key')
    op.drop_column('notifications', 'action')
    op.drop_column('orders', 'cancel_reason')
    op.drop_column('orders', 'courier_arrived_at')
    op.drop_column('orders', 'courier_accepted_at')
    op.drop_column('orders', 'assigned_at')
    op.drop_column('orders', 'confirmed_by')
