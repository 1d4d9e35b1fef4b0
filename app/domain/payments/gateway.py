"""WeChat Pay client - v2 XML API (JSAPI orders, refunds, order query)"""

import logging
import ssl
import time
from functools import lru_cache
from typing import Any, Mapping, Optional

import httpx

from ...config import (
    WECHAT_PAY_API_KEY,
    WECHAT_PAY_APP_ID,
    WECHAT_PAY_BASE_URL,
    WECHAT_PAY_CERT_PATH,
    WECHAT_PAY_KEY_PATH,
    WECHAT_PAY_MCH_ID,
    WECHAT_PAY_NOTIFY_URL,
    WECHAT_PAY_REFUND_NOTIFY_URL,
    WECHAT_PAY_SIGN_TYPE,
    WECHAT_PAY_TIMEOUT,
)
from ...errors import GatewayError
from ...security_utils import generate_nonce, mask_sensitive_data
from ...webhook_security import (
    WebhookSignatureError,
    compute_signature,
    decrypt_refund_info,
    parse_xml,
    to_xml,
    verify_signature,
)

logger = logging.getLogger(__name__)

UNIFIED_ORDER_PATH = "/pay/unifiedorder"
ORDER_QUERY_PATH = "/pay/orderquery"
REFUND_PATH = "/secapi/pay/refund"

SUCCESS = "SUCCESS"


class WechatPayClient:
    """
    Thin client over the gateway's signed XML endpoints.

    Built from configuration by get_wechat_pay_client and injected as a FastAPI
    dependency; tests pass an httpx transport instead of reaching the network.
    """

    def __init__(
        self,
        app_id: str,
        mch_id: str,
        api_key: str,
        notify_url: str = "",
        refund_notify_url: str = "",
        sign_type: str = "MD5",
        base_url: str = "https://api.mch.weixin.qq.com",
        timeout: float = 15.0,
        cert_path: Optional[str] = None,
        key_path: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.app_id = app_id
        self.mch_id = mch_id
        self.api_key = api_key
        self.notify_url = notify_url
        self.refund_notify_url = refund_notify_url
        self.sign_type = sign_type
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.cert_path = cert_path
        self.key_path = key_path
        self._transport = transport

        if not self.is_configured():
            logger.warning(
                "WeChat Pay credentials not set; gateway calls will fail until configured"
            )

    def is_configured(self) -> bool:
        return bool(self.app_id and self.mch_id and self.api_key)

    # ========================================================================
    # SIGNING
    # ========================================================================

    def sign(self, params: Mapping[str, Any], sign_type: Optional[str] = None) -> str:
        return compute_signature(params, self.api_key, sign_type or self.sign_type)

    def verify_notification(self, fields: Mapping[str, Any]) -> bool:
        return verify_signature(fields, self.api_key, self.sign_type)

    def decrypt_refund_info(self, req_info: str) -> dict[str, str]:
        return decrypt_refund_info(req_info, self.api_key)

    def _base_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "appid": self.app_id,
            "mch_id": self.mch_id,
            "nonce_str": generate_nonce(),
        }
        if self.sign_type != "MD5":
            params["sign_type"] = self.sign_type
        return params

    # ========================================================================
    # TRANSPORT
    # ========================================================================

    def _http_client(self, use_cert: bool) -> httpx.Client:
        if self._transport is not None:
            return httpx.Client(transport=self._transport, timeout=self.timeout)
        if use_cert:
            context = ssl.create_default_context()
            context.load_cert_chain(self.cert_path, self.key_path)
            return httpx.Client(timeout=self.timeout, verify=context)
        return httpx.Client(timeout=self.timeout)

    def _post(self, path: str, params: dict[str, Any], use_cert: bool = False) -> dict[str, str]:
        """Sign, send and parse one request; any transport or protocol failure is a GatewayError"""
        if not self.is_configured():
            raise GatewayError("WeChat Pay is not configured")

        params["sign"] = self.sign(params)
        body = to_xml(params)
        url = f"{self.base_url}{path}"

        try:
            with self._http_client(use_cert) as client:
                response = client.post(
                    url, content=body.encode("utf-8"), headers={"Content-Type": "application/xml"}
                )
                response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.error(f"❌ Gateway timeout after {self.timeout}s: {path}")
            raise GatewayError(f"Gateway timeout on {path}") from e
        except httpx.HTTPError as e:
            logger.error(f"❌ Gateway request failed: {path}: {e}")
            raise GatewayError(f"Gateway request failed on {path}: {e}") from e
        except (OSError, ssl.SSLError) as e:
            logger.error(f"❌ Could not load merchant certificate: {e}")
            raise GatewayError(f"Merchant certificate error: {e}") from e

        try:
            result = parse_xml(response.content)
        except WebhookSignatureError as e:
            raise GatewayError(f"Unreadable gateway response on {path}") from e

        if result.get("return_code") != SUCCESS:
            raise GatewayError(f"Gateway error on {path}: {result.get('return_msg', 'unknown')}")

        if result.get("sign") and not verify_signature(result, self.api_key, self.sign_type):
            raise GatewayError(f"Gateway response signature mismatch on {path}")

        return result

    @staticmethod
    def _require_result(result: dict[str, str], action: str) -> None:
        if result.get("result_code") != SUCCESS:
            detail = result.get("err_code_des") or result.get("err_code") or "unknown"
            raise GatewayError(f"Gateway rejected {action}: {detail}")

    # ========================================================================
    # OPERATIONS
    # ========================================================================

    def create_jsapi_order(
        self, out_trade_no: str, amount: int, description: str, openid: str
    ) -> dict[str, str]:
        """
        Place a JSAPI order and return the signed payload the client hands to the
        payment sheet (appId, timeStamp, nonceStr, package, signType, paySign).
        """
        params = self._base_params()
        params.update(
            {
                "body": description,
                "out_trade_no": out_trade_no,
                "total_fee": str(amount),
                "spbill_create_ip": "127.0.0.1",
                "notify_url": self.notify_url,
                "trade_type": "JSAPI",
                "openid": openid,
            }
        )
        logger.info(
            f"📤 Unified order {out_trade_no}: amount={amount} openid={mask_sensitive_data(openid)}"
        )
        result = self._post(UNIFIED_ORDER_PATH, params)
        self._require_result(result, "unified order")

        prepay_id = result.get("prepay_id")
        if not prepay_id:
            raise GatewayError("Gateway returned no prepay_id")

        payload = {
            "appId": self.app_id,
            "timeStamp": str(int(time.time())),
            "nonceStr": generate_nonce(),
            "package": f"prepay_id={prepay_id}",
            "signType": self.sign_type,
        }
        payload["paySign"] = self.sign(payload)
        logger.info(f"✅ Prepay created for {out_trade_no}")
        return payload

    def create_refund(
        self,
        out_trade_no: str,
        out_refund_no: str,
        total_fee: int,
        refund_fee: int,
        reason: Optional[str] = None,
    ) -> dict[str, str]:
        """Request a refund; the endpoint requires the merchant client certificate"""
        if not (self.cert_path and self.key_path):
            raise GatewayError("Merchant API certificate is not configured")

        params = self._base_params()
        params.update(
            {
                "out_trade_no": out_trade_no,
                "out_refund_no": out_refund_no,
                "total_fee": str(total_fee),
                "refund_fee": str(refund_fee),
                "refund_desc": reason or None,
                "notify_url": self.refund_notify_url or None,
            }
        )
        logger.info(f"📤 Refund {out_refund_no} for {out_trade_no}: {refund_fee}/{total_fee}")
        result = self._post(REFUND_PATH, params, use_cert=True)
        self._require_result(result, "refund")
        logger.info(f"✅ Refund {out_refund_no} accepted: refund_id={result.get('refund_id')}")
        return result

    def query_order(self, out_trade_no: str) -> dict[str, str]:
        """Order state as the gateway sees it (trade_state, total_fee, transaction_id)"""
        params = self._base_params()
        params["out_trade_no"] = out_trade_no
        result = self._post(ORDER_QUERY_PATH, params)
        self._require_result(result, "order query")
        logger.info(f"🔍 Order {out_trade_no} trade_state={result.get('trade_state')}")
        return result


@lru_cache
def get_wechat_pay_client() -> WechatPayClient:
    """FastAPI dependency building the gateway client from configuration"""
    return WechatPayClient(
        app_id=WECHAT_PAY_APP_ID,
        mch_id=WECHAT_PAY_MCH_ID,
        api_key=WECHAT_PAY_API_KEY,
        notify_url=WECHAT_PAY_NOTIFY_URL,
        refund_notify_url=WECHAT_PAY_REFUND_NOTIFY_URL,
        sign_type=WECHAT_PAY_SIGN_TYPE,
        base_url=WECHAT_PAY_BASE_URL,
        timeout=WECHAT_PAY_TIMEOUT,
        cert_path=WECHAT_PAY_CERT_PATH,
        key_path=WECHAT_PAY_KEY_PATH,
    )
