from alembic import op
import sqlalchemy as sa

revision = '0001_init'
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        'orders',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('patient_id', sa.String(36), nullable=False, index=True),
        sa.Column('pharmacy_id', sa.String(36), nullable=False, index=True),
        sa.Column('prescription_id', sa.String(36), nullable=True),
        sa.Column('status', sa.String(30), nullable=False, index=True),
        sa.Column('medications', sa.JSON, nullable=False),
        sa.Column('delivery_address', sa.String(500), nullable=False),
        sa.Column('delivery_latitude', sa.Float, nullable=True),
        sa.Column('delivery_longitude', sa.Float, nullable=True),
        sa.Column('delivery_notes', sa.Text, nullable=True),
        sa.Column('delivery_person_id', sa.String(36), nullable=True, index=True),
        sa.Column('total_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('estimated_delivery_at', sa.DateTime, nullable=True),
        sa.Column('delivered_at', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
        sa.Column('version', sa.Integer, nullable=False, server_default='0'),
    )
    op.create_table(
        'order_status_history',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id'), nullable=False, index=True),
        sa.Column('seq', sa.Integer, nullable=False),
        sa.Column('event', sa.String(40), nullable=False),
        sa.Column('from_status', sa.String(30), nullable=True),
        sa.Column('to_status', sa.String(30), nullable=False),
        sa.Column('actor_id', sa.String(36), nullable=False),
        sa.Column('actor_role', sa.String(20), nullable=False),
        sa.Column('note', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint('order_id', 'seq', name='uq_order_history_seq'),
    )

def downgrade():
    op.drop_table('order_status_history')
    op.drop_table('orders')
