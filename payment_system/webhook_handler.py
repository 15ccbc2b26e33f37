"""
Webhook handler для платежных событий и админских запросов
Принимает подписанные события оплаты, завершение checkout и запросы админки
"""

import logging
import json
import functools
from dataclasses import replace
from aiohttp import web
from typing import Dict, Optional
import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from collections import defaultdict
import asyncio

from init import Session
from ledger_system.services.balance_service import BalanceService
from ledger_system.services.bonus_pool_service import BonusPoolService
from ledger_system.services.order_completion_service import OrderCompletionService
from ledger_system.services.order_service import OrderService
from ledger_system.services.partner_service import PartnerService
from ledger_system.utils.time_machine import timeMachine
from payment_system.payloads import (
    PayloadError, OrderCompletionRequest, parseOrderPaid, parsePartnerJoined, parseCheckoutContext
)
from csv_reports import REPORTS, generate_csv_report
import config

logger = logging.getLogger(__name__)

# Decimal and datetime values in service results
json_dumps = functools.partial(json.dumps, default=str)


class RateLimiter:
    """Simple rate limiter implementation"""

    def __init__(self, max_requests: int = 10, time_window: int = 60):
        self.max_requests = max_requests
        self.time_window = time_window  # seconds
        self.requests = defaultdict(list)

    def is_allowed(self, client_id: str) -> bool:
        """Check if request is allowed for given client"""
        now = datetime.now()
        cutoff_time = now - timedelta(seconds=self.time_window)

        # Clean old requests
        self.requests[client_id] = [
            req_time for req_time in self.requests[client_id]
            if req_time > cutoff_time
        ]

        if len(self.requests[client_id]) >= self.max_requests:
            return False

        self.requests[client_id].append(now)
        return True

    def cleanup(self):
        """Drop clients with no requests inside twice the window"""
        cutoff_time = datetime.now() - timedelta(seconds=self.time_window * 2)

        clients_to_remove = [
            client_id for client_id, timestamps in self.requests.items()
            if all(ts < cutoff_time for ts in timestamps)
        ]
        for client_id in clients_to_remove:
            del self.requests[client_id]

        if clients_to_remove:
            logger.debug(f"Cleaned up {len(clients_to_remove)} old rate limit entries")

    async def cleanup_loop(self):
        """Periodic cleanup of old entries"""
        while True:
            await asyncio.sleep(300)  # Clean every 5 minutes
            self.cleanup()


class WebhookHandler:
    """Обработчик платежных webhook и админских запросов"""

    def __init__(self, secret_key: str = None, admin_token: str = None, session_factory=None):
        self.secret_key = secret_key or config.WEBHOOK_SECRET_KEY

        # Security check: secret key must be configured
        if not self.secret_key:
            logger.critical("WEBHOOK_SECRET_KEY is not properly configured!")
            raise ValueError("WEBHOOK_SECRET_KEY must be set in environment")

        self.admin_token = admin_token or config.ADMIN_TOKEN
        self.session_factory = session_factory or Session

        self.app = web.Application(client_max_size=config.WEBHOOK_MAX_BODY_SIZE)
        self.rate_limiter = RateLimiter(
            max_requests=config.WEBHOOK_RATE_LIMIT_REQUESTS,
            time_window=config.WEBHOOK_RATE_LIMIT_WINDOW
        )

        # Metrics
        self.request_count = 0
        self.error_count = 0
        self.last_request_time = None
        self.start_time = datetime.now()

        self._cleanup_task = None

        self.setup_routes()
        self.setup_middleware()
        self.app.on_startup.append(self._on_startup)
        self.app.on_cleanup.append(self._on_cleanup)

    async def _on_startup(self, app: web.Application):
        self._cleanup_task = asyncio.create_task(self.rate_limiter.cleanup_loop())

    async def _on_cleanup(self, app: web.Application):
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass

    def setup_routes(self):
        """Настройка маршрутов"""
        self.app.router.add_post('/webhooks/payment', self.handle_payment_webhook)
        self.app.router.add_post('/checkout/complete', self.handle_checkout_complete)
        self.app.router.add_get('/health', self.handle_health)

        # Admin read views
        self.app.router.add_get('/admin/bonus-pool', self.handle_pool_status)
        self.app.router.add_get('/admin/bonus-pool/cycles', self.handle_cycle_history)
        self.app.router.add_get('/admin/bonus-pool/cycles/{cycleId}/payouts', self.handle_cycle_payouts)
        self.app.router.add_get('/admin/ledger/{ownerId}', self.handle_ledger)
        self.app.router.add_get('/admin/orders/{orderId}/steps', self.handle_order_steps)
        self.app.router.add_get('/admin/reports/{reportType}', self.handle_report)

        # Admin actions
        self.app.router.add_post('/admin/orders/{orderId}/retry', self.handle_retry_steps)
        self.app.router.add_post('/admin/orders/{orderId}/cancel', self.handle_cancel_order)
        self.app.router.add_post('/admin/bonus-pool/settle', self.handle_settle)
        self.app.router.add_post('/admin/partners/{memberId}/tokens', self.handle_adjust_tokens)
        self.app.router.add_post('/admin/ledger/reconcile', self.handle_reconcile)

        # Catch-all for undefined routes
        self.app.router.add_route('*', '/{path:.*}', self.handle_not_found)

    def setup_middleware(self):
        """Setup middleware for request processing"""

        @web.middleware
        async def security_middleware(request, handler):
            """Security checks for all requests"""

            client_ip = self.get_client_ip(request)
            logger.info(f"Request from {client_ip}: {request.method} {request.path}")

            if request.path == '/health':
                return await handler(request)

            if not self.rate_limiter.is_allowed(client_ip):
                logger.warning(f"Rate limit exceeded for IP: {client_ip}")
                return web.json_response(
                    {'error': 'Too Many Requests'},
                    status=429
                )

            if request.path.startswith('/admin/') and not self.is_admin(request):
                logger.warning(f"Unauthorized admin request from {client_ip}: {request.path}")
                return web.json_response(
                    {'error': 'Unauthorized'},
                    status=401
                )

            try:
                return await handler(request)
            except web.HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error processing request: {e}", exc_info=True)
                self.error_count += 1
                return web.json_response(
                    {'error': 'Internal Server Error'},
                    status=500
                )

        self.app.middlewares.append(security_middleware)

    def get_client_ip(self, request: web.Request) -> str:
        """Get real client IP from request"""
        if 'X-Forwarded-For' in request.headers:
            # Take the first IP from the chain
            return request.headers['X-Forwarded-For'].split(',')[0].strip()
        elif 'X-Real-IP' in request.headers:
            return request.headers['X-Real-IP']
        return request.remote or 'unknown'

    def is_admin(self, request: web.Request) -> bool:
        if not self.admin_token:
            return False
        provided = request.headers.get('X-Admin-Token', '')
        return hmac.compare_digest(provided, self.admin_token)

    def sign(self, data_dict: Dict) -> str:
        """Подпись от данных без поля signature, ключи отсортированы"""
        data_for_signing = data_dict.copy()
        data_for_signing.pop('signature', None)

        payload_json = json.dumps(data_for_signing, sort_keys=True, separators=(',', ':'))

        return hmac.new(
            self.secret_key.encode('utf-8'),
            payload_json.encode('utf-8'),
            hashlib.sha256
        ).hexdigest()

    def verify_signature(self, data_dict: Dict, signature: str) -> bool:
        """Проверка подписи запроса"""
        if not signature:
            logger.warning("No signature provided in request")
            return False

        expected = self.sign(data_dict)

        # Use constant-time comparison
        is_valid = hmac.compare_digest(expected, signature)

        if not is_valid:
            logger.warning(f"Invalid signature. Expected: {expected[:10]}..., Got: {signature[:10]}...")

        return is_valid

    async def read_signed_json(self, request: web.Request) -> Dict:
        """
        Read, size-check, replay-check and verify a signed JSON body.
        Raises HTTP errors for anything that should not reach the services.
        """
        client_ip = self.get_client_ip(request)
        body = await request.read()

        if len(body) > config.WEBHOOK_MAX_BODY_SIZE:
            logger.warning(f"Request body too large from {client_ip}: {len(body)} bytes")
            raise web.HTTPRequestEntityTooLarge(
                max_size=config.WEBHOOK_MAX_BODY_SIZE,
                actual_size=len(body)
            )

        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON from {client_ip}: {e}")
            raise web.HTTPBadRequest(text=json.dumps({'error': 'Invalid JSON'}), content_type='application/json')

        if not isinstance(data, dict):
            raise web.HTTPBadRequest(text=json.dumps({'error': 'Invalid JSON'}), content_type='application/json')

        # Check timestamp (prevent replay attacks)
        try:
            request_time = datetime.fromisoformat(str(data['timestamp']).replace('Z', '+00:00'))
            if request_time.tzinfo is not None:
                request_time = request_time.astimezone(timezone.utc).replace(tzinfo=None)
            time_diff = abs((timeMachine.now - request_time).total_seconds())
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Invalid timestamp from {client_ip}: {e}")
            raise web.HTTPBadRequest(text=json.dumps({'error': 'Invalid timestamp'}), content_type='application/json')

        if time_diff > config.WEBHOOK_TIMESTAMP_TOLERANCE:
            logger.warning(f"Request timestamp too old from {client_ip}: {time_diff} seconds")
            raise web.HTTPBadRequest(text=json.dumps({'error': 'Request expired'}), content_type='application/json')

        if not self.verify_signature(data, data.get('signature', '')):
            logger.warning(f"Invalid signature from {client_ip} on {request.path}")
            raise web.HTTPUnauthorized(text=json.dumps({'error': 'Invalid signature'}), content_type='application/json')

        return data

    async def handle_not_found(self, request: web.Request) -> web.Response:
        """Handle undefined routes"""
        logger.warning(f"404 Not Found: {request.path} from {self.get_client_ip(request)}")

        # Don't reveal internal structure
        return web.Response(
            text='Not Found',
            status=404
        )

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            'status': 'ok',
            'timestamp': timeMachine.now.isoformat(),
            'virtual_clock': timeMachine.isTestMode,
            'service': 'ledger-webhook',
            'requests_total': self.request_count,
            'errors_total': self.error_count,
            'uptime_seconds': (datetime.now() - self.start_time).total_seconds()
        })

    async def handle_payment_webhook(self, request: web.Request) -> web.Response:
        """
        Обработка события платежного провайдера

        Ожидаемый запрос:
        {
            "type": "order.paid" | "partner.joined",
            "timestamp": "2025-01-01T00:00:00Z",
            "data": {...},
            "signature": "hmac_sha256_hex"
        }
        """
        self.request_count += 1
        self.last_request_time = datetime.now()

        data = await self.read_signed_json(request)
        eventType = data.get('type')

        try:
            if eventType == 'order.paid':
                result = await self._process_order_paid(data.get('data'))
            elif eventType == 'partner.joined':
                result = await self._process_partner_joined(data.get('data'))
            else:
                logger.warning(f"Unsupported payment event type: {eventType}")
                return web.json_response({'error': f'Unsupported event type: {eventType}'}, status=400)
        except PayloadError as e:
            logger.warning(f"Rejected {eventType} payload: {e}")
            return web.json_response({'error': str(e)}, status=400)

        status = 200 if result.get('success') else 422
        return web.json_response({'received': True, **result}, status=status, dumps=json_dumps)

    async def _process_order_paid(self, eventData: Optional[Dict]) -> Dict:
        event = parseOrderPaid(eventData)

        if event.checkout:
            # The paid amount is authoritative over the stored checkout total
            completionRequest = replace(event.checkout, amount=event.amount)
        else:
            completionRequest = OrderCompletionRequest(
                orderId=event.orderId,
                orderNumber=event.orderNumber,
                amount=event.amount
            )

        with self.session_factory() as session:
            payment = await OrderService(session).markOrderPaid(event)
            completion = await OrderCompletionService(session).completeOrder(completionRequest)

        return {
            'success': True,
            'transitioned': payment['transitioned'],
            'completion': completion
        }

    async def _process_partner_joined(self, eventData: Optional[Dict]) -> Dict:
        event = parsePartnerJoined(eventData)

        with self.session_factory() as session:
            return await PartnerService(session).enrollPartner(
                event.memberId,
                event.tier,
                referralCode=event.referralCode,
                paymentReference=event.paymentReference
            )

    async def handle_checkout_complete(self, request: web.Request) -> web.Response:
        """
        Завершение заказа после редиректа с оплаты

        Ожидаемый запрос:
        {
            "timestamp": "2025-01-01T00:00:00Z",
            "context": {"orderId": ..., "amount": ..., "selections": [...], ...},
            "signature": "hmac_sha256_hex"
        }
        """
        self.request_count += 1
        self.last_request_time = datetime.now()

        data = await self.read_signed_json(request)

        try:
            completionRequest = parseCheckoutContext(data.get('context'))
        except PayloadError as e:
            logger.warning(f"Rejected checkout context: {e}")
            return web.json_response({'error': str(e)}, status=400)

        with self.session_factory() as session:
            result = await OrderCompletionService(session).completeOrder(completionRequest)

        return web.json_response(result, dumps=json_dumps)

    async def handle_pool_status(self, request: web.Request) -> web.Response:
        with self.session_factory() as session:
            status = await BonusPoolService(session).getPoolStatus()
        return web.json_response(status, dumps=json_dumps)

    async def handle_cycle_history(self, request: web.Request) -> web.Response:
        limit = self._int_query(request, 'limit', 6)
        with self.session_factory() as session:
            cycles = await BonusPoolService(session).getCycleHistory(limit=limit)
        return web.json_response({'cycles': cycles}, dumps=json_dumps)

    async def handle_cycle_payouts(self, request: web.Request) -> web.Response:
        cycleId = self._int_match(request, 'cycleId')
        with self.session_factory() as session:
            payouts = await BonusPoolService(session).getCyclePayouts(cycleId)
        return web.json_response({'cycleId': cycleId, 'payouts': payouts}, dumps=json_dumps)

    async def handle_ledger(self, request: web.Request) -> web.Response:
        ownerId = self._int_match(request, 'ownerId')
        account = request.query.get('account')
        limit = self._int_query(request, 'limit', 50)

        with self.session_factory() as session:
            service = BalanceService(session)
            balances = await service.getBalances(ownerId)
            entries = await service.getEntries(ownerId, account=account, limit=limit)
            entryRows = [
                {
                    'entryId': entry.entryID,
                    'createdAt': entry.createdAt.isoformat() if entry.createdAt else None,
                    'account': entry.account,
                    'entryType': entry.entryType,
                    'amount': entry.amount,
                    'description': entry.description,
                    'orderId': entry.orderID,
                    'cycleId': entry.cycleID
                }
                for entry in entries
            ]

        return web.json_response({'ownerId': ownerId, 'balances': balances, 'entries': entryRows},
                                 dumps=json_dumps)

    async def handle_order_steps(self, request: web.Request) -> web.Response:
        orderId = request.match_info['orderId']
        with self.session_factory() as session:
            steps = await OrderCompletionService(session).getSteps(orderId)
        return web.json_response({'orderId': orderId, 'steps': steps}, dumps=json_dumps)

    async def handle_report(self, request: web.Request) -> web.Response:
        reportType = request.match_info['reportType']
        if reportType not in REPORTS:
            return web.json_response({'error': f'Unknown report: {reportType}'}, status=404)

        with self.session_factory() as session:
            output = generate_csv_report(session, reportType, dict(request.query))

        if output is None:
            return web.json_response({'error': 'Report could not be generated'}, status=400)

        filename = f"{reportType}_{timeMachine.now.strftime('%Y%m%d_%H%M%S')}.csv"
        return web.Response(
            body=output.read(),
            content_type='text/csv',
            charset='utf-8',
            headers={'Content-Disposition': f'attachment; filename="{filename}"'}
        )

    async def handle_retry_steps(self, request: web.Request) -> web.Response:
        orderId = request.match_info['orderId']
        with self.session_factory() as session:
            result = await OrderCompletionService(session).retryFailedSteps(orderId)

        status = 200 if result['success'] else 409
        return web.json_response(result, status=status, dumps=json_dumps)

    async def handle_cancel_order(self, request: web.Request) -> web.Response:
        orderId = request.match_info['orderId']
        body = await self._optional_json(request)
        reason = body.get('reason') or 'Cancelled by admin'

        with self.session_factory() as session:
            result = await OrderService(session).cancelOrder(orderId, reason)

        status = 200 if result['success'] else 409
        return web.json_response(result, status=status, dumps=json_dumps)

    async def handle_settle(self, request: web.Request) -> web.Response:
        """Settle one cycle by id, or every cycle whose end has passed"""
        body = await self._optional_json(request)
        cycleId = body.get('cycleId')

        try:
            with self.session_factory() as session:
                service = BonusPoolService(session)
                if cycleId is not None:
                    result = await service.settle(int(cycleId))
                else:
                    result = await service.settleDueCycles()
        except (ValueError, TypeError) as e:
            return web.json_response({'error': f'Invalid cycleId: {e}'}, status=400)
        except Exception as e:
            logger.error(f"Admin settlement failed: {e}", exc_info=True)
            self.error_count += 1
            return web.json_response({'success': False, 'error': str(e)}, status=500)

        status = 200 if result['success'] else 404
        return web.json_response(result, status=status, dumps=json_dumps)

    async def handle_adjust_tokens(self, request: web.Request) -> web.Response:
        memberId = self._int_match(request, 'memberId')
        body = await self._optional_json(request)

        delta = body.get('delta')
        adminId = body.get('adminId')
        reason = body.get('reason')
        if not isinstance(delta, int) or isinstance(delta, bool) or adminId is None or not reason:
            return web.json_response({'error': 'delta (integer), adminId and reason are required'}, status=400)

        with self.session_factory() as session:
            result = await PartnerService(session).adjustTokens(memberId, delta, adminId, reason)

        status = 200 if result['success'] else 409
        return web.json_response(result, status=status, dumps=json_dumps)

    async def handle_reconcile(self, request: web.Request) -> web.Response:
        body = await self._optional_json(request)
        ownerId = body.get('ownerId')

        with self.session_factory() as session:
            result = await BalanceService(session).reconcile(ownerId=ownerId)
        return web.json_response(result, dumps=json_dumps)

    @staticmethod
    def _int_match(request: web.Request, key: str) -> int:
        try:
            return int(request.match_info[key])
        except ValueError:
            raise web.HTTPNotFound(text='Not Found')

    @staticmethod
    def _int_query(request: web.Request, key: str, default: int) -> int:
        try:
            return int(request.query.get(key, default))
        except ValueError:
            raise web.HTTPBadRequest(text=json.dumps({'error': f'{key} must be an integer'}),
                                     content_type='application/json')

    @staticmethod
    async def _optional_json(request: web.Request) -> Dict:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except json.JSONDecodeError:
            raise web.HTTPBadRequest(text=json.dumps({'error': 'Invalid JSON'}), content_type='application/json')
        return body if isinstance(body, dict) else {}

    async def start(self, host: str = '127.0.0.1', port: int = 8080):
        """
        Запуск webhook сервера

        По умолчанию слушает только localhost для безопасности.
        Используйте reverse proxy (nginx) для внешнего доступа.
        """
        self.start_time = datetime.now()

        # Security warning for public interface
        if host == '0.0.0.0':
            logger.warning("Webhook server is listening on all interfaces! Ensure firewall is configured.")

        runner = web.AppRunner(self.app)
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        await site.start()

        logger.info(f"Webhook server started on {host}:{port}")
        logger.info(f"Admin token configured: {'yes' if self.admin_token else 'no'}")
        logger.info(f"Rate limiting: {self.rate_limiter.max_requests} requests per {self.rate_limiter.time_window} seconds")

        return runner


# Функция для запуска в main.py
async def start_webhook_server():
    """Запускает webhook сервер"""
    try:
        handler = WebhookHandler()
        runner = await handler.start(
            host=config.WEBHOOK_HOST,
            port=config.WEBHOOK_PORT
        )
        return runner
    except ValueError as e:
        logger.critical(f"Failed to start webhook server: {e}")
        raise
    except Exception as e:
        logger.critical(f"Unexpected error starting webhook server: {e}", exc_info=True)
        raise
