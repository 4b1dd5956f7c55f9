"""
Synthetic data generators for NudgeCast.
Generate realistic ledgers (accounts, salary, spending, budgets, goals
and bills) for demos and for seeding a local database.
"""

import random
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from faker import Faker
from sqlalchemy.orm import Session

from nudgecast.features.window_utils import add_months, next_due_from_day
from nudgecast.ingest.schema import Account, Bill, Budget, FinancialProfile, Goal, Transaction, User
from nudgecast.money import quantize

# Spending categories with (min, max) amount and weekly frequency
SPENDING_CATEGORIES = {
    "Groceries": (300, 2500, 2.0),
    "Food & Dining": (150, 1200, 3.0),
    "Transportation": (50, 600, 4.0),
    "Shopping": (400, 4000, 0.8),
    "Entertainment": (200, 1500, 0.6),
    "Utilities": (500, 2500, 0.25),
    "Healthcare": (200, 3000, 0.15),
}

RECURRING_EXPENSES = [
    ("Rent", "Housing", (8000, 25000)),
    ("Home Loan EMI", "EMI", (6000, 20000)),
    ("Phone Plan", "Utilities", (299, 999)),
    ("Streaming", "Entertainment", (149, 649)),
]

BILL_NAMES = ["Electricity", "Internet", "Credit Card", "Insurance Premium", "Water"]
GOAL_NAMES = ["Emergency Fund", "Vacation", "New Laptop", "Wedding", "Down Payment"]
FREQUENCY_PREFERENCES = ["LOW", "NORMAL", "NORMAL", "HIGH"]


class SyntheticUserGenerator:
    """Generate synthetic users with a range of income levels."""

    def __init__(self, seed: int = 42):
        self.fake = Faker("en_IN")
        Faker.seed(seed)
        self.random = random.Random(seed)

    def generate_user(self, user_number: int) -> Dict:
        """
        Generate a single synthetic user.

        Args:
            user_number: Sequential user number for ID and email uniqueness

        Returns:
            Dict with user data and a monthly salary
        """
        name = self.fake.name()
        parts = name.lower().split()
        handle = f"{parts[0][0]}{parts[-1]}" if len(parts) >= 2 else parts[0]
        return {
            'user_id': f"user_{user_number:04d}",
            'name': name,
            'email': f"{handle}{user_number}@example.com",
            'monthly_salary': self.random.choice([25000, 40000, 60000, 90000, 150000]),
            'created_at': datetime.utcnow() - timedelta(days=self.random.randint(90, 365)),
        }

    def generate_users(self, count: int = 25) -> List[Dict]:
        return [self.generate_user(i) for i in range(1, count + 1)]


class SyntheticLedgerGenerator:
    """Generate accounts, transactions, budgets, goals and bills for one user."""

    def __init__(self, seed: int = 42):
        self.random = random.Random(seed)

    def generate_accounts(self, user: Dict) -> List[Dict]:
        salary = user['monthly_salary']
        accounts = [{
            'name': "Main",
            'type': "CURRENT",
            'balance': quantize(self.random.uniform(0.05, 1.2) * salary),
            'is_default': True,
        }]
        if self.random.random() < 0.6:
            accounts.append({
                'name': "Savings",
                'type': "SAVINGS",
                'balance': quantize(self.random.uniform(0.2, 3.0) * salary),
                'is_default': False,
            })
        return accounts

    def generate_transactions(self, user: Dict, months: int = 3, now: Optional[datetime] = None) -> List[Dict]:
        """
        Salary on a fixed payday each month, weekly-rhythm spending and
        recurring rent/EMI style expenses.
        """
        now = now or datetime.utcnow()
        start = now - timedelta(days=30 * months)
        payday = self.random.choice([1, 5, 7, 28])
        transactions = []

        for offset in range(months + 1):
            pay_date = add_months(start.replace(day=payday, hour=10, minute=0, second=0, microsecond=0), offset)
            if start <= pay_date <= now:
                transactions.append(self._txn("INCOME", user['monthly_salary'], "Salary", "Monthly salary", pay_date))

        for category, (low, high, per_week) in SPENDING_CATEGORIES.items():
            count = int(per_week * (now - start).days / 7)
            for _ in range(count):
                when = start + timedelta(seconds=self.random.randint(0, int((now - start).total_seconds())))
                when = when.replace(hour=self.random.choice([9, 13, 19, 21]))
                transactions.append(self._txn("EXPENSE", self.random.uniform(low, high), category, category, when))

        for description, category, (low, high) in RECURRING_EXPENSES:
            if self.random.random() < 0.5:
                continue
            due_day = self.random.randint(1, 28)
            amount = self.random.uniform(low, high)
            txn = self._txn("EXPENSE", amount, category, description, now - timedelta(days=self.random.randint(1, 29)))
            txn.update({
                'is_recurring': True,
                'recurring_interval': "MONTHLY",
                'next_recurring_date': next_due_from_day(due_day, now),
            })
            transactions.append(txn)

        return sorted(transactions, key=lambda t: t['date'])

    def generate_budget(self, user: Dict) -> Optional[Dict]:
        if self.random.random() < 0.2:
            return None
        return {'amount': quantize(user['monthly_salary'] * self.random.uniform(0.5, 0.9))}

    def generate_goals(self, user: Dict, now: Optional[datetime] = None) -> List[Dict]:
        now = now or datetime.utcnow()
        goals = []
        for name in self.random.sample(GOAL_NAMES, self.random.randint(0, 2)):
            target = quantize(user['monthly_salary'] * self.random.uniform(0.5, 4))
            goals.append({
                'name': name,
                'target_amount': target,
                'saved_amount': quantize(target * Decimal(str(round(self.random.uniform(0, 0.6), 2)))),
                'target_date': now + timedelta(days=self.random.randint(60, 365)),
                'created_at': now - timedelta(days=self.random.randint(30, 180)),
            })
        return goals

    def generate_bills(self, user: Dict, now: Optional[datetime] = None) -> List[Dict]:
        now = now or datetime.utcnow()
        bills = []
        for name in self.random.sample(BILL_NAMES, self.random.randint(1, 3)):
            due_day = self.random.randint(1, 28)
            bills.append({
                'name': name,
                'amount': quantize(self.random.uniform(400, 5000)),
                'due_day': due_day,
                'next_due_date': next_due_from_day(due_day, now),
                'auto_pay_enabled': self.random.random() < 0.3,
            })
        return bills

    def _txn(self, txn_type: str, amount, category: str, description: str, when: datetime) -> Dict:
        return {
            'type': txn_type,
            'amount': quantize(amount),
            'category': category,
            'description': description,
            'date': when,
            'is_recurring': False,
        }


def seed_database(session: Session, count: int = 25, seed: int = 42) -> List[str]:
    """
    Create ``count`` synthetic users with full ledgers.

    Balances are whatever the account generator picked; transactions are
    history and are not replayed against them.

    Returns:
        Created user IDs
    """
    user_gen = SyntheticUserGenerator(seed)
    ledger_gen = SyntheticLedgerGenerator(seed)
    now = datetime.utcnow()
    created = []

    for data in user_gen.generate_users(count):
        if session.query(User).filter(User.user_id == data['user_id']).first():
            continue
        user = User(user_id=data['user_id'], name=data['name'], email=data['email'], created_at=data['created_at'])
        session.add(user)
        session.flush()

        accounts = [Account(user_id=user.user_id, **a) for a in ledger_gen.generate_accounts(data)]
        session.add_all(accounts)
        session.flush()
        default = accounts[0]

        for txn in ledger_gen.generate_transactions(data, now=now):
            session.add(Transaction(user_id=user.user_id, account_id=default.account_id, status="COMPLETED", **txn))

        budget = ledger_gen.generate_budget(data)
        if budget:
            session.add(Budget(user_id=user.user_id, **budget))
        for goal in ledger_gen.generate_goals(data, now=now):
            session.add(Goal(user_id=user.user_id, **goal))
        for bill in ledger_gen.generate_bills(data, now=now):
            session.add(Bill(user_id=user.user_id, **bill))
        session.add(FinancialProfile(
            user_id=user.user_id,
            preferred_nudge_types=[],
            disliked_nudge_types=[],
            nudge_frequency_preference=ledger_gen.random.choice(FREQUENCY_PREFERENCES),
        ))
        created.append(user.user_id)

    session.commit()
    return created
