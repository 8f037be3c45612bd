"""
OAuth token lifecycle for the amoCRM API
"""
import logging
import time
from typing import Callable, Dict, Optional

import requests
from sqlalchemy.exc import IntegrityError

from errors import AuthenticationError
from models import OAuthToken, SessionFactory

logger = logging.getLogger(__name__)


class TokenManager:
    """Owns access/refresh tokens for one service and refreshes them on expiry"""

    def __init__(self, session_factory: SessionFactory, auth_url: str, client_id: str,
                 client_secret: str, redirect_uri: str, service: str = 'amocrm',
                 margin: int = 60, timeout: float = 30,
                 http: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.time):
        """
        Initialize token manager

        Args:
            session_factory: Creates database sessions for the oauth_tokens table
            auth_url: Token endpoint (https://<subdomain>.amocrm.ru/oauth2/access_token)
            client_id: Integration client id
            client_secret: Integration client secret
            redirect_uri: Redirect URI registered for the integration
            service: Row key in oauth_tokens
            margin: Seconds before expiry at which a token is refreshed
            timeout: HTTP timeout for token requests
            http: requests session (injectable for tests)
            clock: Returns current epoch seconds
        """
        self.session_factory = session_factory
        self.auth_url = auth_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.service = service
        self.margin = margin
        self.timeout = timeout
        self.http = http or requests.Session()
        self.clock = clock

    def load(self) -> Optional[OAuthToken]:
        db = self.session_factory()
        try:
            return db.query(OAuthToken).filter_by(service=self.service).first()
        finally:
            db.close()

    def save(self, access_token: str, refresh_token: str, expires_at: int) -> None:
        """Upsert the token row for this service"""
        values = {
            'access_token': access_token,
            'refresh_token': refresh_token,
            'expires_at': int(expires_at),
        }
        db = self.session_factory()
        try:
            updated = db.query(OAuthToken).filter_by(service=self.service).update(
                values, synchronize_session=False
            )
            if not updated:
                db.add(OAuthToken(service=self.service, **values))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                db.query(OAuthToken).filter_by(service=self.service).update(
                    values, synchronize_session=False
                )
                db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def bootstrap(self, access_token: str, refresh_token: str, expires_at: int = 0) -> bool:
        """
        Seed tokens from the environment when no row exists yet

        Returns:
            True if a row was written
        """
        if not access_token or not refresh_token:
            return False
        if self.load() is not None:
            return False
        self.save(access_token, refresh_token, expires_at or int(self.clock()) + 3600)
        logger.info("Bootstrapped %s tokens from environment", self.service)
        return True

    def ensure_access_token(self) -> str:
        """
        Return a valid access token, refreshing it if it expires within the margin

        Raises:
            AuthenticationError: no stored tokens, or the refresh failed
        """
        token = self.load()
        if token is None:
            raise AuthenticationError('No amoCRM tokens. Run OAuth setup.')

        if int(token.expires_at) > int(self.clock()) + self.margin:
            return token.access_token

        logger.info("Refreshing %s access token", self.service)
        data = self._token_request({
            'grant_type': 'refresh_token',
            'refresh_token': token.refresh_token,
        })
        return self._store_response(data)

    def exchange_code(self, code: str) -> str:
        """Exchange an OAuth authorization code for tokens and store them"""
        if not code:
            raise AuthenticationError('Missing authorization code')
        data = self._token_request({
            'grant_type': 'authorization_code',
            'code': code,
        })
        return self._store_response(data)

    def _token_request(self, grant: Dict[str, str]) -> Dict:
        payload = {
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'redirect_uri': self.redirect_uri,
        }
        payload.update(grant)
        grant_type = grant['grant_type']

        try:
            response = self.http.post(self.auth_url, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise AuthenticationError(f"amoCRM {grant_type} error: {e}")

        if response.status_code >= 400:
            logger.error("amoCRM %s HTTP %s: %s", grant_type, response.status_code, response.text)
            raise AuthenticationError(
                f"amoCRM {grant_type} HTTP {response.status_code}: {response.text}",
                status_code=response.status_code, body=response.text,
            )

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            logger.error("amoCRM %s invalid JSON: %s", grant_type, response.text)
            raise AuthenticationError(
                f"amoCRM {grant_type} invalid JSON response: {response.text}",
                status_code=response.status_code, body=response.text,
            )
        return data

    def _store_response(self, data: Dict) -> str:
        access = data.get('access_token')
        refresh = data.get('refresh_token')
        if not access or not refresh:
            logger.error("amoCRM token response missing tokens: %s", data)
            raise AuthenticationError(f"amoCRM token response malformed: {data}")

        expires_in = data.get('expires_in')
        if isinstance(expires_in, bool):
            expires_in = None
        try:
            expires_in = int(expires_in)
        except (TypeError, ValueError):
            logger.error("amoCRM token response invalid expires_in: %s", data)
            raise AuthenticationError(f"amoCRM token response invalid expires_in: {data}")

        self.save(access, refresh, int(self.clock()) + expires_in)
        return access
