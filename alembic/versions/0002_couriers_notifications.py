from alembic import op
import sqlalchemy as sa

revision = '0002_couriers_notifications'
down_revision = '0001_init'
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        'couriers',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False, unique=True, index=True),
        sa.Column('name', sa.String(200), nullable=True),
        sa.Column('latitude', sa.Float, nullable=True),
        sa.Column('longitude', sa.Float, nullable=True),
        sa.Column('is_available', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('rating', sa.Float, nullable=False, server_default='5.0'),
        sa.Column('active_order_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('max_active_orders', sa.Integer, nullable=False, server_default='1'),
        sa.Column('total_deliveries', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_heartbeat_at', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
        sa.Column('version', sa.Integer, nullable=False, server_default='0'),
    )
    op.create_table(
        'notifications',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False, index=True),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('body', sa.Text, nullable=False),
        sa.Column('type', sa.String(30), nullable=False),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id'), nullable=True, index=True),
        sa.Column('is_read', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )

def downgrade():
    op.drop_table('notifications')
    op.drop_table('couriers')
