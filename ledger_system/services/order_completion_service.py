# ledger_system/services/order_completion_service.py
"""
Order completion pipeline.

Runs the side effects of a paid order in a fixed sequence:
member -> address -> link_member -> bill -> inventory -> bonus_pool -> referral.

The bill is the idempotency guard: once it exists the pipeline never runs
again for that order. Each step commits on its own; a failing step is
rolled back, recorded as failed and reported as a warning while the
remaining steps still run. Payment is authoritative, so the result is
always success. Failed post-bill steps can be re-run by an admin through
retryFailedSteps, which rebuilds its input from persisted state.
"""
import secrets
import string
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import logging

from models import Bill, Order, OrderCompletionStep
from ledger_system.events.event_bus import eventBus, LedgerEvents
from ledger_system.services.bonus_pool_service import BonusPoolService
from ledger_system.services.inventory_service import InventoryService
from ledger_system.services.member_service import MemberService
from ledger_system.services.order_service import OrderService
from ledger_system.services.referral_service import ReferralService
from ledger_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

STEP_MEMBER = "member"
STEP_ADDRESS = "address"
STEP_LINK_MEMBER = "link_member"
STEP_BILL = "bill"
STEP_INVENTORY = "inventory"
STEP_BONUS_POOL = "bonus_pool"
STEP_REFERRAL = "referral"

# Steps that need an existing bill and can be retried from persisted state
POST_BILL_STEPS = (STEP_INVENTORY, STEP_BONUS_POOL, STEP_REFERRAL)

BILL_NUMBER_ALPHABET = string.ascii_uppercase + string.digits
BILL_NUMBER_ATTEMPTS = 5


def generateBillNumber() -> str:
    """INVyyyymmdd plus four random characters."""
    suffix = "".join(secrets.choice(BILL_NUMBER_ALPHABET) for _ in range(4))
    return f"INV{timeMachine.now.strftime('%Y%m%d')}{suffix}"


class OrderCompletionService:
    """Service driving a paid order through its side effects."""

    def __init__(self, session: Session):
        self.session = session
        self.memberService = MemberService(session)
        self.orderService = OrderService(session)
        self.inventoryService = InventoryService(session)
        self.bonusPoolService = BonusPoolService(session)
        self.referralService = ReferralService(session)

    def _findBill(self, orderId: str) -> Optional[Bill]:
        return self.session.query(Bill).filter_by(
            referenceType="order",
            referenceID=orderId
        ).first()

    def _markStep(self, orderId: str, step: str, status: str, error: Optional[str] = None):
        """Upsert the step record; the caller commits."""
        row = self.session.query(OrderCompletionStep).filter_by(
            orderID=orderId,
            step=step
        ).first()

        if row:
            row.status = status
            row.error = error
            row.attempts = (row.attempts or 0) + 1
        else:
            self.session.add(OrderCompletionStep(
                orderID=orderId,
                step=step,
                status=status,
                error=error,
                attempts=1
            ))

    async def _runStep(
            self,
            orderId: str,
            step: str,
            action: Callable[[], Awaitable[Any]],
            warnings: List[Dict]
    ) -> Tuple[bool, Any]:
        """Run one step in its own transaction and record the outcome."""
        try:
            result = await action()
            self._markStep(orderId, step, "done")
            self.session.commit()
            return True, result

        except Exception as e:
            self.session.rollback()
            logger.error(f"Order {orderId}: step '{step}' failed: {e}", exc_info=True)
            warnings.append({"step": step, "error": str(e)})

            try:
                self._markStep(orderId, step, "failed", str(e))
                self.session.commit()
            except Exception as recordError:
                self.session.rollback()
                logger.error(f"Order {orderId}: could not record failed step '{step}': {recordError}")

            return False, None

    def _skipStep(self, orderId: str, step: str, reason: str):
        self._markStep(orderId, step, "skipped", reason)
        self.session.commit()

    async def completeOrder(self, request) -> Dict:
        """
        Complete a paid order.

        Args:
            request: OrderCompletionRequest

        Returns:
            Dict with success (always True), alreadyProcessed or the bill
            and member ids, per-step statuses and warnings
        """
        orderId = request.orderId

        if self._findBill(orderId):
            logger.info(f"Order {orderId} already completed, skipping")
            return {"success": True, "alreadyProcessed": True, "orderId": orderId}

        await self.orderService.ensureOrder(orderId, request.orderNumber, request.amount, request.selections)
        self.session.commit()

        warnings = []
        steps = {}

        # 1. Member
        memberId = None
        if request.userId:
            async def resolveMember():
                member, created = await self.memberService.getOrCreateMember(
                    request.userId,
                    request.name or request.userId,
                    phone=request.phone,
                    email=request.email
                )
                if created and request.referralCode:
                    await self.memberService.attachReferrer(member, request.referralCode)
                return member.memberID

            ok, memberId = await self._runStep(orderId, STEP_MEMBER, resolveMember, warnings)
            steps[STEP_MEMBER] = "done" if ok else "failed"

        # 2. Delivery address
        if memberId and not request.selectedAddressId and request.delivery:
            async def saveAddress():
                return await self.memberService.saveAddress(memberId, request.delivery.toDict(), isDefault=True)

            ok, _ = await self._runStep(orderId, STEP_ADDRESS, saveAddress, warnings)
            steps[STEP_ADDRESS] = "done" if ok else "failed"

        # 3. Link member to order
        if memberId:
            async def linkMember():
                return self.session.query(Order).filter(
                    Order.orderID == orderId,
                    Order.memberID.is_(None)
                ).update({Order.memberID: memberId}, synchronize_session=False)

            ok, _ = await self._runStep(orderId, STEP_LINK_MEMBER, linkMember, warnings)
            steps[STEP_LINK_MEMBER] = "done" if ok else "failed"

        # 4. Bill, the commit point of the pipeline
        try:
            bill = await self._createBill(orderId, request.orderNumber, request.amount, memberId)
        except Exception as e:
            self.session.rollback()
            if isinstance(e, IntegrityError) and self._findBill(orderId):
                logger.info(f"Order {orderId} completed concurrently, skipping")
                return {"success": True, "alreadyProcessed": True, "orderId": orderId}
            logger.error(f"Order {orderId}: bill creation failed, pipeline stopped: {e}", exc_info=True)
            warnings.append({"step": STEP_BILL, "error": str(e)})
            try:
                self._markStep(orderId, STEP_BILL, "failed", str(e))
                self.session.commit()
            except Exception as recordError:
                self.session.rollback()
                logger.error(f"Order {orderId}: could not record failed bill step: {recordError}")
            steps[STEP_BILL] = "failed"
            return {
                "success": True,
                "orderId": orderId,
                "billId": None,
                "memberId": memberId,
                "steps": steps,
                "warnings": warnings
            }

        steps[STEP_BILL] = "done"

        # 5-7. Post-bill side effects
        steps.update(await self._runPostBillSteps(
            orderId,
            POST_BILL_STEPS,
            amount=request.amount,
            memberId=memberId,
            selections=request.selections,
            warnings=warnings
        ))

        if warnings:
            logger.warning(f"Order {orderId} completed with warnings: {warnings}")
        else:
            logger.info(f"Order {orderId} completed, bill {bill.billNumber}")

        await eventBus.emit(LedgerEvents.ORDER_COMPLETED, {
            "orderId": orderId,
            "billId": bill.billID,
            "memberId": memberId,
            "warnings": len(warnings)
        })

        return {
            "success": True,
            "orderId": orderId,
            "billId": bill.billID,
            "billNumber": bill.billNumber,
            "memberId": memberId,
            "steps": steps,
            "warnings": warnings
        }

    async def _createBill(self, orderId: str, orderNumber: str, amount: int, memberId: Optional[int]) -> Bill:
        """
        Insert the order's bill and commit.
        A bill number taken by another order is retried with a fresh one;
        a bill that already exists for this order raises IntegrityError.
        """
        for _ in range(BILL_NUMBER_ATTEMPTS):
            billNumber = generateBillNumber()
            bill = Bill(
                billNumber=billNumber,
                type="income",
                category="sales",
                amount=amount,
                description=f"Order {orderNumber}",
                status="paid",
                paidDate=timeMachine.now,
                referenceType="order",
                referenceID=orderId,
                memberID=memberId
            )
            try:
                self.session.add(bill)
                self._markStep(orderId, STEP_BILL, "done")
                self.session.commit()
            except IntegrityError:
                self.session.rollback()
                if self._findBill(orderId):
                    raise
                logger.warning(f"Bill number {billNumber} already taken, retrying for order {orderId}")
                continue

            logger.info(f"Bill {billNumber} created for order {orderId}")
            return bill

        raise RuntimeError(f"Could not allocate a bill number for order {orderId}")

    async def _runPostBillSteps(
            self,
            orderId: str,
            stepNames,
            amount: int,
            memberId: Optional[int],
            selections: List[Dict],
            warnings: List[Dict]
    ) -> Dict[str, str]:
        statuses = {}

        if STEP_INVENTORY in stepNames:
            async def deductInventory():
                items = selections
                if not items:
                    order = self.session.get(Order, orderId)
                    items = self.orderService.itemsAsSelections(order) if order else []
                return await self.inventoryService.deductForOrder(orderId, items)

            ok, _ = await self._runStep(orderId, STEP_INVENTORY, deductInventory, warnings)
            statuses[STEP_INVENTORY] = "done" if ok else "failed"

        if STEP_BONUS_POOL in stepNames:
            async def contributeToPool():
                result = await self.bonusPoolService.contribute(amount, orderId=orderId)
                if not result["success"]:
                    raise ValueError(result["error"])
                return result

            ok, _ = await self._runStep(orderId, STEP_BONUS_POOL, contributeToPool, warnings)
            statuses[STEP_BONUS_POOL] = "done" if ok else "failed"

        if STEP_REFERRAL in stepNames:
            if memberId:
                async def payCommission():
                    return await self.referralService.processOrderCommission(orderId, memberId, amount)

                ok, _ = await self._runStep(orderId, STEP_REFERRAL, payCommission, warnings)
                statuses[STEP_REFERRAL] = "done" if ok else "failed"
            else:
                self._skipStep(orderId, STEP_REFERRAL, "no member linked")
                statuses[STEP_REFERRAL] = "skipped"

        return statuses

    async def retryFailedSteps(self, orderId: str) -> Dict:
        """
        Re-run the failed post-bill steps of an order.
        Input comes from the bill, the order's line items and its linked
        member; every step re-checks what it already wrote.
        """
        bill = self._findBill(orderId)
        if not bill:
            return {"success": False, "error": "Order has no bill, resubmit the completion instead"}

        failed = [
            row.step for row in self.session.query(OrderCompletionStep).filter(
                OrderCompletionStep.orderID == orderId,
                OrderCompletionStep.status == "failed",
                OrderCompletionStep.step.in_(POST_BILL_STEPS)
            ).all()
        ]

        if not failed:
            return {"success": True, "orderId": orderId, "retried": {}, "warnings": []}

        order = self.session.get(Order, orderId)
        memberId = order.memberID if order else bill.memberID

        warnings = []
        retried = await self._runPostBillSteps(
            orderId,
            failed,
            amount=int(bill.amount),
            memberId=memberId,
            selections=[],
            warnings=warnings
        )

        logger.info(f"Retried steps for order {orderId}: {retried}")
        return {
            "success": True,
            "orderId": orderId,
            "retried": retried,
            "warnings": warnings
        }

    async def getSteps(self, orderId: str) -> List[Dict]:
        rows = self.session.query(OrderCompletionStep).filter_by(
            orderID=orderId
        ).order_by(OrderCompletionStep.stepID).all()

        return [
            {
                "step": row.step,
                "status": row.status,
                "error": row.error,
                "attempts": row.attempts,
                "updatedAt": row.updatedAt.isoformat() if row.updatedAt else None
            }
            for row in rows
        ]
