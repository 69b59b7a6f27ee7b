"""
Flask CLI command tests.
"""

from datetime import timedelta
from decimal import Decimal

from storepos.models import Payment, User
from storepos.services import config_service, sales_service
from storepos.time_utils import utcnow
from storepos.validation import CartLine


class TestCliCommands:

    def test_set_upi(self, app, db_session):
        result = app.test_cli_runner().invoke(args=['config', 'set-upi', '--upi-id', 'shop@okbank'])

        assert result.exit_code == 0, result.output
        assert config_service.get_upi_settings().upi_id == 'shop@okbank'

    def test_set_upi_rejects_malformed_id(self, app, db_session):
        result = app.test_cli_runner().invoke(args=['config', 'set-upi', '--upi-id', 'not an id'])
        assert result.exit_code != 0

    def test_create_user(self, app, db_session):
        result = app.test_cli_runner().invoke(args=[
            'users', 'create', '--username', 'till2', '--password', 'Till2Pass!', '--role', 'cashier',
        ])

        assert result.exit_code == 0, result.output
        assert db_session.query(User).filter_by(username='till2').one().role == 'cashier'

    def test_expire_pending(self, app, db_session, cashier_user, product):
        sale = sales_service.create_sale(
            cart=[CartLine(product.id, Decimal('1'))], user_id=cashier_user.id, payment_method='upi',
        ).sale
        payment = db_session.query(Payment).filter_by(sale_id=sale.id).one()
        payment.created_at = utcnow() - timedelta(hours=2)
        db_session.commit()

        result = app.test_cli_runner().invoke(args=['payments', 'expire-pending', '--minutes', '60'])

        assert result.exit_code == 0, result.output
        assert 'DONE 1 pending payment(s)' in result.output
        db_session.refresh(payment)
        assert payment.status == 'failed'
