"""Per-account reconciliation of Chargebee subscription state.

For one account the reconciler compares the fetched subscription with the
current field values on the account and its main profile, sets only the
fields whose value differs and saves each entity at most once. Account and
profile saves are independent: a failure on one is reported and the other
still goes ahead.
"""

import logging
from dataclasses import dataclass, field

from .messages import MessageSink
from .store import (
    CUSTOMER_ID,
    END_DATE,
    MEMBERSHIP_TYPE,
    MONTHLY_PAYMENT,
    PLAN_ID,
    Account,
    AccountStore,
    PlanManager,
    Profile,
    ProfileStore,
)
from .subscriptions import SubscriptionRecord, SubscriptionStatus
from .utils import cents_to_amount, epoch_to_date, same_amount

logger = logging.getLogger("chargebee_sync.reconciler")

PROVIDER = "chargebee"
ROLES = "roles"


@dataclass
class ReconcileOptions:
    detailed: bool = False
    create_revision: bool = False


@dataclass
class ReconcileResult:
    account_fields: list[str] = field(default_factory=list)
    profile_fields: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def account_changed(self) -> bool:
        return bool(self.account_fields)

    @property
    def profile_changed(self) -> bool:
        return bool(self.profile_fields)

    @property
    def applied_fields(self) -> list[str]:
        return [f"account.{name}" for name in self.account_fields] + [
            f"profile.{name}" for name in self.profile_fields
        ]


class AccountReconciler:
    def __init__(
        self,
        account_store: AccountStore,
        profile_store: ProfileStore,
        plan_manager: PlanManager,
        messages: MessageSink,
        member_role: str | None = None,
    ):
        self.account_store = account_store
        self.profile_store = profile_store
        self.plan_manager = plan_manager
        self.messages = messages
        self.member_role = member_role or None
        self.account_caps = account_store.capabilities
        self.profile_caps = profile_store.capabilities

    @property
    def _manages_roles(self) -> bool:
        """A member role is configured and accounts of this store carry roles."""
        return bool(self.member_role) and self.account_caps.roles

    def reconcile(
        self,
        account: Account,
        profile: Profile | None,
        subscription: SubscriptionRecord | None,
        options: ReconcileOptions | None = None,
    ) -> ReconcileResult:
        options = options or ReconcileOptions()
        result = ReconcileResult()

        if subscription is None:
            self.messages.warning(
                f"No subscription found for account {account.id} "
                f"(customer {account.get(CUSTOMER_ID)})."
            )
            return result

        if options.detailed:
            self.messages.status(
                f"Fetched subscription for customer {subscription.customer_id}: "
                f"status={subscription.status}, plan_id={subscription.plan_id}, "
                f"plan_amount_cents={subscription.plan_amount_cents}"
            )

        if subscription.has_amount:
            self._apply_plan(account, profile, subscription, result)
        elif subscription.status != SubscriptionStatus.CANCELLED:
            self.messages.warning(
                f"Subscription data incomplete for customer {subscription.customer_id}."
            )

        if subscription.is_active_like:
            self._apply_active(account, profile, result)
        elif subscription.status == SubscriptionStatus.CANCELLED and subscription.cancelled_at is not None:
            self._apply_cancelled(account, profile, subscription, result)

        self._save(account, profile, result, options)
        return result

    def _apply_plan(
        self,
        account: Account,
        profile: Profile | None,
        subscription: SubscriptionRecord,
        result: ReconcileResult,
    ) -> None:
        plan_id = subscription.plan_id
        amount = cents_to_amount(subscription.plan_amount_cents)
        term = self.plan_manager.upsert_plan(
            plan_id,
            {"amount": amount, "currency": subscription.currency_code, "provider": PROVIDER},
        )

        if self.account_caps.has(PLAN_ID) and account.get(PLAN_ID) != plan_id:
            account.set(PLAN_ID, plan_id)
            result.account_fields.append(PLAN_ID)

        if self.account_caps.has(MONTHLY_PAYMENT):
            if not same_amount(account.get(MONTHLY_PAYMENT), amount):
                account.set(MONTHLY_PAYMENT, str(amount))
                result.account_fields.append(MONTHLY_PAYMENT)
        elif profile is None:
            self.messages.warning(f"No main profile found for account {account.id}.")
        elif not self.profile_caps.has(MONTHLY_PAYMENT):
            self.messages.warning(
                f"Profile {profile.id} of account {account.id} does not have {MONTHLY_PAYMENT}."
            )
        elif not same_amount(profile.get(MONTHLY_PAYMENT), amount):
            profile.set(MONTHLY_PAYMENT, str(amount))
            result.profile_fields.append(MONTHLY_PAYMENT)

        membership_type = term.membership_type if term else None
        if (
            membership_type
            and profile is not None
            and self.profile_caps.has(MEMBERSHIP_TYPE)
            and profile.get(MEMBERSHIP_TYPE) != membership_type
        ):
            profile.set(MEMBERSHIP_TYPE, membership_type)
            result.profile_fields.append(MEMBERSHIP_TYPE)

    def _apply_active(self, account: Account, profile: Profile | None, result: ReconcileResult) -> None:
        if profile is not None and self.profile_caps.has(END_DATE) and profile.get(END_DATE):
            profile.set(END_DATE, None)
            result.profile_fields.append(END_DATE)

        if self._manages_roles and not account.has_role(self.member_role):
            account.roles.add(self.member_role)
            result.account_fields.append(ROLES)

    def _apply_cancelled(
        self,
        account: Account,
        profile: Profile | None,
        subscription: SubscriptionRecord,
        result: ReconcileResult,
    ) -> None:
        if profile is not None and self.profile_caps.has(END_DATE):
            end_date = epoch_to_date(subscription.cancelled_at)
            if end_date and profile.get(END_DATE) != end_date:
                profile.set(END_DATE, end_date)
                result.profile_fields.append(END_DATE)
        else:
            self.messages.warning(
                f"Subscription for account {account.id} is cancelled but no profile "
                f"end date could be recorded."
            )

        if self._manages_roles and account.has_role(self.member_role):
            account.roles.discard(self.member_role)
            result.account_fields.append(ROLES)

    def _save(
        self,
        account: Account,
        profile: Profile | None,
        result: ReconcileResult,
        options: ReconcileOptions,
    ) -> None:
        if result.account_changed:
            revision_log = _revision_log(result.account_fields) if options.create_revision else None
            try:
                self.account_store.save(account, revision_log=revision_log)
            except Exception as e:
                error = f"Failed to save account {account.id}: {e}"
                result.errors.append(error)
                self.messages.error(error)
            else:
                logger.info("Account %s updated: %s", account.id, ", ".join(result.account_fields))
                if options.detailed:
                    self.messages.status(
                        f"Account {account.id} saved ({', '.join(result.account_fields)})."
                    )

        if result.profile_changed and profile is not None:
            revision_log = _revision_log(result.profile_fields) if options.create_revision else None
            try:
                self.profile_store.save(profile, revision_log=revision_log)
            except Exception as e:
                error = f"Failed to save profile {profile.id} of account {account.id}: {e}"
                result.errors.append(error)
                self.messages.error(error)
            else:
                logger.info("Profile %s updated: %s", profile.id, ", ".join(result.profile_fields))
                if options.detailed:
                    self.messages.status(
                        f"Profile {profile.id} of account {account.id} saved "
                        f"({', '.join(result.profile_fields)})."
                    )

        if not result.account_changed and not result.profile_changed and options.detailed:
            self.messages.status(f"Account {account.id} is already up to date.")


def _revision_log(fields: list[str]) -> str:
    return f"Chargebee sync updated: {', '.join(fields)}"
