#!/usr/bin/python3

'''
Introduction:
=============

This Python3 module implements a browser-less federated login to a
data platform through an external SAML Identity Provider (IdP). It is
used when a connection is configured to authenticate via an IdP (the
authenticator is the IdP's https URL) instead of presenting the
password directly to the platform.

The platform never sees the IdP credentials being verified, the IdP
does. The client however has to carry the user's credentials and the
resulting SAML assertion between the two parties, which makes it the
one place where a misconfigured or malicious party can redirect those
credentials or that assertion. Two client side checks guard against
this and are the reason this module exists:

* The SSO and token URLs the platform tells us to use MUST have the
  same scheme and host as the IdP URL the user configured. Otherwise
  the user could be coerced into handing credentials to an IdP
  impersonator.

* The postback URL found in the SAML response form MUST have the same
  scheme and host as the platform we are connecting to. This emulates
  an IdP initiated login in a browser where the IdP instructs the
  browser to POST the assertion to a specific SP endpoint, and
  prevents an assertion issued for one SP being sent to another.

Login Flow:
===========

1. Fetch the SSO and token URLs from the platform

The client POSTs an authenticator request naming the account and the
configured IdP URL to the platform, which answers with the IdP's SSO
URL and token URL.

2. Verify the SSO and token URLs

Both URLs must share scheme and host with the configured IdP URL.

3. Fetch a one-time token from the IdP

The user name and password are POSTed to the token URL, the IdP
answers with a one-time session (cookie) token.

4. Fetch the SAML response from the IdP

The SSO URL is fetched with the one-time token as a query parameter.
The IdP answers with an HTML page holding an auto-submit form which
carries the SAML assertion.

5. Verify the postback URL

The action of the first form in the page must share scheme and host
with the platform.

6. Log in to the platform

The raw HTML is POSTed to the platform's login endpoint, the response
is handed back to the session which records the issued tokens.

Any failure aborts the flow, no step is retried.

Implementation Notes:
=====================

The tool requires the following external Python libraries:

* requests (used for HTTP communication)
* lxml (used for HTML and XML processing)
* urllib3 (the connection pools under requests, tracked so a call can
  be aborted)

The flow runs under asyncio so it can be cancelled while a network
call is outstanding. Requests is a blocking library, each call is run
in a worker thread owned by the LoginSession. Cancelling a call shuts
down the socket it is blocked on, the worker thread then unwinds with
a connection error which is discarded.
'''

#-------------------------------------------------------------------------------

import argparse
import asyncio
import base64
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor
import functools
import getpass
import html
import importlib.metadata
from io import StringIO
import json
import logging
import platform
import re
import signal
import socket
import sys
import textwrap
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit
import uuid
import weakref

import requests
from requests.adapters import HTTPAdapter
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool
from urllib3.poolmanager import ProxyManager
from lxml import etree
import lxml.html

#---------------------- Declarations & Global Variables ------------------------

AUTHENTICATOR_REQUEST_PATH = '/session/authenticator-request'
LOGIN_REQUEST_PATH = '/session/v1/login-request'

# Fixed RelayState sent to the IdP SSO endpoint
RELAY_STATE = '/some/deep/link'

# Seconds, the token exchange is a direct credential POST to the IdP
IDP_TOKEN_TIMEOUT = 16

DEFAULT_CONNECTION_TIMEOUT = 120

# Seconds a cancelled call is given to unwind after its connection is shut down
ABORT_TIMEOUT = 5

CONTENT_TYPE_JSON = 'application/json'

CLIENT_APP_ID = 'idp_saml_login'

try:
    CLIENT_APP_VERSION = importlib.metadata.version('idp_saml_login')
except importlib.metadata.PackageNotFoundError:
    CLIENT_APP_VERSION = '0.0.0'

USER_AGENT = '%s/%s (%s) %s/%s' % (CLIENT_APP_ID, CLIENT_APP_VERSION,
                                   platform.system(),
                                   platform.python_implementation(),
                                   platform.python_version())

# Names of the flow steps, reported in FederatedLoginError.step
STEP_FETCH_URLS = 'fetch-sso-token-urls'
STEP_VERIFY_URLS = 'verify-sso-token-urls'
STEP_FETCH_TOKEN = 'fetch-onetime-token'
STEP_FETCH_SAML = 'fetch-saml-response'
STEP_VERIFY_POSTBACK = 'verify-postback-url'
STEP_LOGIN = 'submit-saml-login'

# Connection property names
ACCOUNT = 'account'
USER = 'user'
PASSWORD = 'password'
HOST = 'host'
SCHEME = 'scheme'
PORT = 'port'
CONNECTION_TIMEOUT = 'connection_timeout'
AUTHENTICATOR = 'authenticator'
APPLICATION = 'application'
DATABASE = 'database'
SCHEMA = 'schema'
WAREHOUSE = 'warehouse'
ROLE = 'role'

# Connection property -> login URL query parameter
LOGIN_QUERY_PARAMETERS = (
    (DATABASE, 'databaseName'),
    (SCHEMA, 'schemaName'),
    (WAREHOUSE, 'warehouse'),
    (ROLE, 'roleName'),
)

# Never written to the log in clear text
REDACTED_KEYS = frozenset(('PASSWORD', 'password', 'cookieToken',
                           'onetimetoken', 'token', 'masterToken',
                           'RAW_SAML_RESPONSE'))
REDACTED = '****'

LOG = logging.getLogger(__name__)

valid_log_categories = set(('message-info',
                            'saml-message',
                            'http-request-response',
                            'http-content',
                            'http-lowlevel',
                            'login-result'))

default_log_categories = frozenset(('message-info',
                                    'http-request-response',
                                    'login-result'))

#------------------------------- Exceptions ------------------------------------

class FederatedLoginError(Exception):
    '''Base class of every failure detected by the federated login.

    step is the name of the flow step which failed, the flow fills it
    in before the exception leaves FederatedLoginFlow.run().'''

    step = None


class RemoteRejected(FederatedLoginError):
    'The platform or the IdP refused the request.'

    def __init__(self, code, message, url=None):
        self.code = code
        self.message = message
        self.url = url
        super().__init__('%s rejected the request, code=%s message=%s' %
                         (url or 'remote endpoint', code, message))


class OriginMismatch(FederatedLoginError):
    'An IdP URL issued by the platform is not on the configured IdP.'

    def __init__(self, url, expected):
        self.url = url
        self.expected = expected
        super().__init__('IdP URL "%s" does not match the configured IdP "%s"' %
                         (url, expected))


class PostbackNotFound(FederatedLoginError):
    'No usable form action URL in the SAML response HTML.'

    def __init__(self, detail=None):
        self.detail = detail
        msg = 'SAML postback URL not found in IdP response'
        if detail:
            msg = '%s (%s)' % (msg, detail)
        super().__init__(msg)


class PostbackInvalid(FederatedLoginError):
    'The SAML postback URL is not on the platform we are logging in to.'

    def __init__(self, found, expected):
        self.found = found
        self.expected = expected
        super().__init__('SAML postback URL "%s" does not match the '
                         'destination "%s"' % (found, expected))


class LoginCancelled(FederatedLoginError):
    def __init__(self):
        super().__init__('federated login cancelled')

#------------------------------ Utilities --------------------------------------

def setup_logging(options, log_categories):
    '''Set up the logging configuration. We don't make much use of the
    log level to control output, the granularity of what is printed is
    controlled by logging categories instead.
    '''

    logging.basicConfig(format='%(message)s', filename=options.log_file,
                        filemode='w')

    LOG.setLevel(logging.INFO)

    if 'http-lowlevel' in log_categories:
        # Enabling debugging at http.client level
        # (requests->urllib3->http.client) you will see the REQUEST,
        # including HEADERS and DATA, and RESPONSE with HEADERS but
        # without DATA.

        from http.client import HTTPConnection
        HTTPConnection.debuglevel = 1
        LOG.setLevel(logging.DEBUG)
        requests_log = logging.getLogger("urllib3")
        requests_log.setLevel(logging.DEBUG)
        requests_log.propagate = True

def banner(string):
    'Make some strings stand out among the voluminous output'

    return '=== %s ===' % string

def redact(value):
    'Return a copy of decoded JSON with secret values masked.'

    if isinstance(value, dict):
        return {k: (REDACTED if k in REDACTED_KEYS else redact(v))
                for k, v in value.items()}
    if isinstance(value, list):
        return [redact(v) for v in value]
    return value

def redact_url(url):
    'Mask secret query parameters of a URL.'

    parts = urlsplit(url)
    if not parts.query:
        return url
    query = [(k, REDACTED if k in REDACTED_KEYS else v)
             for k, v in parse_qsl(parts.query, keep_blank_values=True)]
    return urlunsplit(parts._replace(query=urlencode(query)))

SAML_RESPONSE_INPUT = re.compile(r'''<input\b[^>]*\bname=["']SAMLResponse["'][^>]*>''',
                                 re.IGNORECASE)
INPUT_VALUE = re.compile(r'''(\bvalue=)("[^"]*"|'[^']*')''', re.IGNORECASE)

def redact_html(text):
    'Mask the value of the SAMLResponse input of an IdP auto-submit form.'

    def mask(match):
        return INPUT_VALUE.sub(r'\1"' + REDACTED + '"', match.group(0))

    return SAML_RESPONSE_INPUT.sub(mask, text)

def format_json_body(body):
    '''Pretty print a JSON body with secrets masked. Bodies which are not
    JSON are returned as text.'''

    if isinstance(body, bytes):
        body = body.decode('utf-8', 'replace')
    try:
        data = json.loads(body)
    except ValueError:
        return body
    return json.dumps(redact(data), indent=2, sort_keys=True)

def format_xml_from_object(root):
    'Pretty print an XML object, returned as a string'

    return etree.tostring(root, encoding='unicode', pretty_print=True)

def format_xml_from_string(xml):
    '''Given an XML document as text, parse it and then pretty print it,
    return it as a string'''

    root = etree.fromstring(xml)
    return format_xml_from_object(root)

def extract_saml_assertion(html_text):
    '''Return the SAML assertion carried by the SAMLResponse input of the
    IdP's auto-submit form, base64 decoded, or None if there is none.'''

    document = lxml.html.document_fromstring(html_text)
    values = document.xpath('//input[@name="SAMLResponse"]/@value')
    if not values:
        return None
    return base64.b64decode(values[0])

def format_saml_assertion(html_text):
    'Pretty print the SAML assertion embedded in the IdP HTML response.'

    try:
        assertion = extract_saml_assertion(html_text)
        if assertion is None:
            return 'no SAMLResponse found in IdP response'
        return format_xml_from_string(assertion)
    except (etree.LxmlError, ValueError) as e:
        return 'unable to decode SAML assertion: %s' % e

def _format_http_request_response(buf, response, log_categories):
    '''Pretty print one request/response pair held by a Requests Response
    object into buf.'''

    request = response.request

    buf.write('\nRequest:\n')
    buf.write('  url = %s\n' % redact_url(request.url))
    buf.write('  method = %s\n' % request.method)
    buf.write('  Headers:\n')
    for hdr in sorted(request.headers.keys()):
        buf.write('    %s: %s\n' % (hdr, request.headers[hdr]))
    if request.body and 'http-content' in log_categories:
        buf.write('  Body:\n')
        buf.write(textwrap.indent(format_json_body(request.body), '    '))
        buf.write('\n')

    buf.write('\nResponse:\n')
    buf.write('  Status = %s\n' % response.status_code)
    buf.write('  Headers:\n')
    for hdr in sorted(response.headers.keys()):
        buf.write('    %s: %s\n' % (hdr, response.headers[hdr]))

    if 'http-content' in log_categories:
        content_type = response.headers.get('Content-Type')
        if content_type and response.content:
            if is_content_json(content_type):
                formatted_content = format_json_body(response.content)
            else:
                formatted_content = redact_html(response.text)
            buf.write('  Content:\n')
            buf.write(textwrap.indent(formatted_content, '    '))
            buf.write('\n')

def format_http_request_response(response, log_categories, msg=None):
    '''Python Requests encapsulates a HTTP request & response in their
    Response object. This function pretty prints the request/response
    information, including any redirects, and returns it as a string.'''

    with StringIO() as buf:
        if msg:
            buf.write(msg)
            buf.write('\n')

        if 'http-request-response' in log_categories:
            for r in response.history:
                _format_http_request_response(buf, r, log_categories)
            _format_http_request_response(buf, response, log_categories)

        return buf.getvalue()

def is_content_json(content_type):
    'Based on the Content-Type return True if the content is JSON text.'

    return 'json' in content_type

def client_environment(application=None):
    'Client metadata sent to the platform with every login request.'

    return {
        'APPLICATION': application or CLIENT_APP_ID,
        'OS': platform.system(),
        'OS_VERSION': platform.platform(),
        'PYTHON_VERSION': platform.python_version(),
        'PYTHON_RUNTIME': platform.python_implementation(),
    }

def is_federated_authenticator(authenticator):
    'An authenticator naming an https URL selects the federated login.'

    return bool(authenticator) and authenticator.lower().startswith('https://')

#--------------------------- Origin Validation ---------------------------------

def url_origin(url):
    '''Return the (scheme, host) pair of a parsed URL, the unit of trust
    used by every origin check. urlsplit lower cases both and strips the
    port from the host.'''

    return (url.scheme, url.hostname)

def same_origin(url, trusted):
    return url_origin(url) == url_origin(trusted)

def verify_url_origin(url, trusted):
    '''Raise OriginMismatch unless the parsed URL url has the same scheme
    and host as the parsed URL trusted. Port, path, query and fragment are
    not compared.'''

    if not same_origin(url, trusted):
        e = OriginMismatch(url.geturl(), trusted.geturl())
        LOG.error('Different urls: %s', e)
        raise e

#--------------------------- SAML Postback URL ---------------------------------

def parse_postback_url(text):
    'Parse an extracted form action, it must be an absolute URL.'

    try:
        url = urlsplit(text)
        hostname = url.hostname
    except ValueError as e:
        raise PostbackNotFound('unparsable URL "%s": %s' % (text, e))
    if not url.scheme or not hostname:
        raise PostbackNotFound('not an absolute URL "%s"' % text)
    return url


class ScanningPostbackExtractor:
    '''Find the postback URL by scanning the HTML text.

    The IdP's HTML is not necessarily well formed so it is not parsed.
    The first form found is assumed to be the form posting the assertion
    back, its action attribute must be written as action="...". Single
    quoted or unquoted attributes are not recognized.'''

    name = 'scan'

    def extract(self, html_text):
        form_index = html_text.find('<form')
        if form_index == -1:
            raise PostbackNotFound('no <form> tag')

        action_index = html_text.find('action=', form_index)
        if action_index == -1:
            raise PostbackNotFound('form has no action attribute')

        # skip 'action="' (length = 8)
        start = action_index + 8
        if not html_text.startswith('"', start - 1):
            raise PostbackNotFound('form action is not double quoted')
        end = html_text.find('"', start)
        if end == -1:
            raise PostbackNotFound('form action is not terminated')

        return parse_postback_url(html.unescape(html_text[start:end]))


class LxmlPostbackExtractor:
    'Find the postback URL by parsing the HTML with lxml.'

    name = 'lxml'

    def extract(self, html_text):
        try:
            document = lxml.html.document_fromstring(html_text)
        except (etree.LxmlError, ValueError) as e:
            raise PostbackNotFound('unparsable HTML: %s' % e)

        forms = document.xpath('//form')
        if not forms:
            raise PostbackNotFound('no <form> tag')
        action = forms[0].get('action')
        if action is None:
            raise PostbackNotFound('form has no action attribute')

        return parse_postback_url(action)


POSTBACK_EXTRACTORS = {
    ScanningPostbackExtractor.name: ScanningPostbackExtractor,
    LxmlPostbackExtractor.name: LxmlPostbackExtractor,
}

def verify_postback_url(html_text, scheme, host, extractor=None):
    '''Extract the postback URL from the IdP's SAML response HTML and
    verify it has the scheme and host of the platform. Returns the parsed
    postback URL.'''

    if extractor is None:
        extractor = ScanningPostbackExtractor()

    try:
        postback_url = extractor.extract(html_text)
    except PostbackNotFound as e:
        LOG.error('Fail to extract SAML from html: %s', e)
        raise

    expected = (scheme.lower(), host.lower())
    if url_origin(postback_url) != expected:
        e = PostbackInvalid(postback_url.geturl(), '%s://%s' % expected)
        LOG.error('Different urls: %s', e)
        raise e

    return postback_url

#------------------------------ Requests ---------------------------------------

# Wire level request handed to the transport
HttpRequest = namedtuple('HttpRequest',
                         ['method', 'url', 'headers', 'params', 'json', 'timeout'])

# JSON request to the platform, data is the content of the "data" member
AuthnRestRequest = namedtuple('AuthnRestRequest', ['url', 'data', 'timeout'])

IdpTokenRestRequest = namedtuple('IdpTokenRestRequest',
                                 ['url', 'username', 'password', 'timeout'])

SamlRestRequest = namedtuple('SamlRestRequest',
                             ['url', 'onetime_token', 'timeout'])

def json_headers():
    return {
        'Content-Type': CONTENT_TYPE_JSON,
        'Accept': CONTENT_TYPE_JSON,
        'User-Agent': USER_AGENT,
    }

@functools.singledispatch
def to_http_request(request):
    'Convert one of the request variants into an HttpRequest.'

    raise TypeError('unknown request type: %s' % type(request).__name__)

@to_http_request.register(AuthnRestRequest)
def _authn_http_request(request):
    return HttpRequest('POST', request.url, json_headers(), None,
                       {'data': request.data}, request.timeout)

@to_http_request.register(IdpTokenRestRequest)
def _idp_token_http_request(request):
    body = {
        'username': request.username,
        'password': request.password,
    }
    return HttpRequest('POST', request.url, json_headers(), None,
                       body, request.timeout)

@to_http_request.register(SamlRestRequest)
def _saml_http_request(request):
    headers = {
        'Accept': '*/*',
        'User-Agent': USER_AGENT,
    }
    # The query of the SSO URL is replaced, not extended
    query = urlencode([
        ('RelayState', RELAY_STATE),
        ('onetimetoken', request.onetime_token),
    ])
    url = urlunsplit(urlsplit(request.url)._replace(query=query))
    return HttpRequest('GET', url, headers, None, None, request.timeout)

def build_authenticator_request(context, idp_url):
    data = {
        'ACCOUNT_NAME': context.account,
        'AUTHENTICATOR': idp_url,
        'CLIENT_APP_ID': CLIENT_APP_ID,
        'CLIENT_APP_VERSION': CLIENT_APP_VERSION,
        'CLIENT_ENVIRONMENT': client_environment(context.application),
    }
    return AuthnRestRequest(context.authenticator_url, data,
                            context.connection_timeout)

def build_idp_token_request(context, token_url):
    return IdpTokenRestRequest(token_url, context.user, context.password,
                               IDP_TOKEN_TIMEOUT)

def build_saml_request(sso_url, onetime_token):
    # Some IdPs do slow server side processing before answering, wait forever
    return SamlRestRequest(sso_url, onetime_token, None)

def build_login_request(context, saml_html):
    data = {
        'LOGIN_NAME': context.user,
        'PASSWORD': context.password,
        'ACCOUNT_NAME': context.account,
        'CLIENT_APP_ID': CLIENT_APP_ID,
        'CLIENT_APP_VERSION': CLIENT_APP_VERSION,
        'CLIENT_ENVIRONMENT': client_environment(context.application),
        'RAW_SAML_RESPONSE': saml_html,
    }
    return AuthnRestRequest(context.login_url, data,
                            context.connection_timeout)

def response_json(response):
    '''Decode the JSON body of a platform response. HTTP error statuses
    raise requests.HTTPError.'''

    response.raise_for_status()
    try:
        body = response.json()
    except ValueError as e:
        raise RemoteRejected(response.status_code,
                             'response is not valid JSON: %s' % e,
                             response.url)
    if not isinstance(body, dict):
        raise RemoteRejected(response.status_code,
                             'response is not a JSON object', response.url)
    return body

def filter_failed_response(body, url=None):
    'Raise RemoteRejected if a platform response reports a failure.'

    if not body.get('success'):
        e = RemoteRejected(body.get('code'), body.get('message'), url)
        LOG.error('Authentication failed: %s', e)
        raise e

async def abandon(task):
    '''Cancel task and wait until it has unwound, whatever network call it
    had outstanding is aborted by then.'''

    task.cancel()
    await asyncio.wait((task,))

#-------------------------- FederatedLoginFlow Class ---------------------------

class FederatedLoginFlow:
    '''This class encapsulates all the data and functions necessary to
    perform a single federated login. Data which needs to be preserved
    between steps is kept in the instance for use in a subsequent step
    and for diagnostics.

    context is the read only LoginContext of the session logging in,
    idp_url the IdP URL the connection was configured with. transport is
    an object with a coroutine method send(HttpRequest) returning a
    requests.Response. login_handler is called exactly once, with the
    decoded final login response, when the login succeeds; its return
    value is returned by run().

    An instance performs one login attempt, run() may only be called
    once.'''

    def __init__(self, context, idp_url, transport, login_handler,
                 postback_extractor=None,
                 log_categories=default_log_categories):
        self.context = context
        self.idp_url = idp_url
        self.transport = transport
        self.login_handler = login_handler
        self.postback_extractor = (postback_extractor or
                                   ScanningPostbackExtractor())
        self.log_categories = log_categories

        self.cancel_event = None
        self.step = None

        #### Collected Data ####

        # Platform authenticator response
        self.sso_url = None
        self.token_url = None

        # IdP responses
        self.onetime_token = None
        self.saml_html = None
        self.postback_url = None

        # Platform login response
        self.login_response = None

    # ==== Utilities ====

    def format_authenticator_response_info(self, log_categories, msg=None):
        '''Pretty print the pertinent pieces of the platform's authenticator
        response and return them as a string.'''

        with StringIO() as buf:
            if msg:
                buf.write(msg)
                buf.write('\n')

            if 'message-info' in log_categories:
                buf.write('Platform Authenticator Response Info:\n')
                buf.write('  idp_url: %s\n' % self.idp_url)
                buf.write('  sso_url: %s\n' % self.sso_url)
                buf.write('  token_url: %s\n' % self.token_url)

            return buf.getvalue()

    def begin_step(self, step):
        'Record the step being run, stop here if the login was cancelled.'

        self.step = step
        if self.cancel_event is not None and self.cancel_event.is_set():
            LOG.error('Federated login cancelled before %s', step)
            raise LoginCancelled()

    async def await_or_cancel(self, aw):
        '''Await aw unless the cancel event is set first, in which case the
        outstanding call is cancelled, awaited until it has unwound, and
        LoginCancelled raised.'''

        if self.cancel_event is None:
            return await aw

        call = asyncio.ensure_future(aw)
        cancelled = asyncio.ensure_future(self.cancel_event.wait())
        try:
            done, _ = await asyncio.wait((call, cancelled),
                                         return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await abandon(call)
            raise
        finally:
            cancelled.cancel()

        if call not in done:
            LOG.error('Federated login cancelled during %s', self.step)
            await abandon(call)
            raise LoginCancelled()
        return call.result()

    async def send(self, request, description):
        http_request = to_http_request(request)
        response = await self.await_or_cancel(self.transport.send(http_request))
        LOG.info(format_http_request_response(response, self.log_categories,
                                              msg=banner(description)))
        return response

    def reject(self, code, message, url):
        e = RemoteRejected(code, message, url)
        LOG.error('Authentication failed: %s', e)
        return e

    def verify_idp_url(self, url, description):
        LOG.debug('Checking %s', description)
        trusted = urlsplit(self.idp_url)
        try:
            parsed = urlsplit(url)
        except ValueError:
            e = OriginMismatch(url, self.idp_url)
            LOG.error('Unparsable %s: %s', description, e)
            raise e
        verify_url_origin(parsed, trusted)

    # ==== Flow Steps ====

    async def run(self, cancel_event=None):
        '''Execute the federated login as a sequence of logical steps.

        cancel_event is an optional asyncio.Event, setting it abandons the
        outstanding network call and raises LoginCancelled. Any failure
        raises a FederatedLoginError with step set, network failures raise
        the requests exception unchanged.'''

        if self.step is not None:
            raise RuntimeError('a FederatedLoginFlow can only be run once')

        self.cancel_event = cancel_event
        LOG.debug('Federated login to %s via %s',
                  self.context.authenticator_url, self.idp_url)

        try:
            await self.fetch_sso_and_token_urls()
            self.verify_sso_and_token_urls()
            await self.fetch_onetime_token()
            await self.fetch_saml_response()
            self.verify_postback_url()
            return await self.submit_saml_login()
        except FederatedLoginError as e:
            e.step = self.step
            raise

    async def fetch_sso_and_token_urls(self):
        '''Ask the platform which IdP endpoints to use. The request names
        the account and the IdP URL the connection was configured with, the
        platform answers with the IdP's SSO URL and token URL.'''

        self.begin_step(STEP_FETCH_URLS)
        LOG.debug('step 1: get sso and token url')

        request = build_authenticator_request(self.context, self.idp_url)
        response = await self.send(request,
                                   'Fetch SSO and token URLs from platform')

        body = response_json(response)
        filter_failed_response(body, request.url)

        data = body.get('data')
        if not isinstance(data, dict):
            data = {}
        self.sso_url = data.get('ssoUrl')
        self.token_url = data.get('tokenUrl')
        if not (isinstance(self.sso_url, str) and self.sso_url and
                isinstance(self.token_url, str) and self.token_url):
            raise self.reject(body.get('code'),
                              'authenticator response has no usable ssoUrl or tokenUrl',
                              request.url)

        LOG.info(self.format_authenticator_response_info(
            self.log_categories, banner('Processed platform authenticator response')))

    def verify_sso_and_token_urls(self):
        '''The SSO and token URLs come from the platform, not from the user.
        They MUST share scheme and host with the configured IdP URL,
        otherwise the credentials sent in the next step could end up at an
        IdP impersonator.'''

        self.begin_step(STEP_VERIFY_URLS)
        LOG.debug('step 2: verify urls fetched from step 1')

        self.verify_idp_url(self.sso_url, 'sso url')
        self.verify_idp_url(self.token_url, 'token url')

    async def fetch_onetime_token(self):
        '''Authenticate the user at the IdP token URL. The IdP answers with
        a one-time session token; anything else, including an HTTP error
        status such as 401 for bad credentials, fails the login.'''

        self.begin_step(STEP_FETCH_TOKEN)
        LOG.debug('step 3: get idp onetime token')

        request = build_idp_token_request(self.context, self.token_url)
        response = await self.send(request, 'Fetch one-time token from IdP')

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = {}

        if not response.ok:
            raise self.reject(body.get('errorCode', response.status_code),
                              body.get('errorSummary', response.reason),
                              request.url)

        self.onetime_token = body.get('cookieToken')
        if not self.onetime_token:
            raise self.reject(None,
                              'The authentication failed for %s by %s' %
                              (self.context.user, request.url),
                              request.url)

    async def fetch_saml_response(self):
        '''Exchange the one-time token for the SAML response at the SSO URL.
        The response is an HTML page holding an auto-submit form whose
        action is the postback URL and whose SAMLResponse input carries the
        assertion.'''

        self.begin_step(STEP_FETCH_SAML)
        LOG.debug('step 4: get SAML response from sso')

        request = build_saml_request(self.sso_url, self.onetime_token)
        response = await self.send(request, 'Fetch SAML response from IdP')
        response.raise_for_status()
        self.saml_html = response.text

        if 'saml-message' in self.log_categories:
            LOG.info('%s\n%s', banner('SAML assertion from IdP'),
                     format_saml_assertion(self.saml_html))

    def verify_postback_url(self):
        '''The form in the SAML response says where the assertion goes. It
        MUST go to the platform we are logging in to, this is what stops an
        assertion issued for one SP being delivered to another.'''

        self.begin_step(STEP_VERIFY_POSTBACK)
        LOG.debug('step 5: verify postback url in SAML response')

        self.postback_url = verify_postback_url(self.saml_html,
                                                self.context.scheme,
                                                self.context.host,
                                                self.postback_extractor)
        if 'message-info' in self.log_categories:
            LOG.info('%s\nPostback URL: %s\n', banner('Verified SAML postback URL'),
                     self.postback_url.geturl())

    async def submit_saml_login(self):
        '''Send the raw SAML response to the platform login endpoint and hand
        a successful response to the login handler.'''

        self.begin_step(STEP_LOGIN)
        LOG.debug('step 6: send SAML response to platform to login')

        request = build_login_request(self.context, self.saml_html)
        response = await self.send(request, 'Send SAML response to platform')

        body = response_json(response)
        filter_failed_response(body, request.url)

        self.login_response = body
        return self.login_handler(body)

#------------------------- Abortable HTTP Transport ----------------------------

class _TrackingPoolMixin:
    '''Remember every connection the pool creates, requests gives no other
    handle on the connection a blocked call is reading from.'''

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.live_connections = weakref.WeakSet()

    def _new_conn(self):
        conn = super()._new_conn()
        self.live_connections.add(conn)
        return conn


class TrackingHTTPConnectionPool(_TrackingPoolMixin, HTTPConnectionPool):
    pass


class TrackingHTTPSConnectionPool(_TrackingPoolMixin, HTTPSConnectionPool):
    pass


TRACKING_POOL_CLASSES = {
    'http': TrackingHTTPConnectionPool,
    'https': TrackingHTTPSConnectionPool,
}

def shutdown_connection(conn):
    '''Shut down the socket of a urllib3 connection. A thread blocked
    reading from it wakes up with a connection error.'''

    sock = getattr(conn, 'sock', None)
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as e:
        LOG.debug('connection already closed: %s', e)


class AbortableHTTPAdapter(HTTPAdapter):
    '''Requests transport adapter whose in-flight requests can be aborted
    from another thread.

    abort() shuts down every connection the adapter has opened. A request
    blocked in connect() is not interrupted, it ends with its connect
    timeout.'''

    def init_poolmanager(self, *args, **kwargs):
        super().init_poolmanager(*args, **kwargs)
        self.poolmanager.pool_classes_by_scheme = TRACKING_POOL_CLASSES

    def proxy_manager_for(self, proxy, **proxy_kwargs):
        manager = super().proxy_manager_for(proxy, **proxy_kwargs)
        if isinstance(manager, ProxyManager):
            manager.pool_classes_by_scheme = TRACKING_POOL_CLASSES
        return manager

    def abort(self):
        managers = [self.poolmanager] + list(self.proxy_manager.values())
        for manager in managers:
            # RecentlyUsedContainer can't be iterated, only its keys
            for key in manager.pools.keys():
                pool = manager.pools.get(key)
                for conn in list(getattr(pool, 'live_connections', ())):
                    shutdown_connection(conn)

def _consume_result(future):
    # The result of an aborted call is never awaited
    if not future.cancelled():
        future.exception()

#--------------------------- LoginSession Class --------------------------------

LoginContext = namedtuple('LoginContext', [
    'account', 'user', 'password', 'host', 'scheme', 'port',
    'connection_timeout', 'application', 'authenticator_url', 'login_url',
])


class LoginSession:
    '''Connection properties and HTTP plumbing for one platform
    connection.

    properties is a mapping of connection property names (ACCOUNT, USER,
    PASSWORD, HOST, ...) to values. The session owns a requests Session
    used for every call of a login and records the tokens issued by a
    successful login.'''

    def __init__(self, properties, log_categories=default_log_categories):
        self.properties = dict(properties)
        self.log_categories = log_categories

        # HTTP session used to perform HTTP request/response
        self.adapter = AbortableHTTPAdapter()
        self.http = requests.Session()
        self.http.mount('https://', self.adapter)
        self.http.mount('http://', self.adapter)

        # Not the loop's default executor, asyncio.run() joins that one
        self.executor = ThreadPoolExecutor(thread_name_prefix=CLIENT_APP_ID)

        # Issued by a successful login
        self.token = None
        self.master_token = None
        self.session_id = None
        self.login_data = None

    def require(self, name):
        value = self.properties.get(name)
        if value is None or value == '':
            raise ValueError('missing required connection property "%s"' % name)
        return value

    @property
    def scheme(self):
        return self.properties.get(SCHEME) or 'https'

    @property
    def connection_timeout(self):
        'Seconds, 0 disables the timeout.'

        value = self.properties.get(CONNECTION_TIMEOUT)
        if value is None or value == '':
            return DEFAULT_CONNECTION_TIMEOUT
        return int(value) or None

    def build_url(self, path, query=None):
        host = self.require(HOST)
        port = self.properties.get(PORT)
        netloc = '%s:%s' % (host, port) if port else host
        return urlunsplit((self.scheme, netloc, path,
                           urlencode(query) if query else '', ''))

    def login_url(self):
        query = []
        for name, parameter in LOGIN_QUERY_PARAMETERS:
            value = self.properties.get(name)
            if value:
                query.append((parameter, value))
        query.append(('request_id', str(uuid.uuid4())))
        return self.build_url(LOGIN_REQUEST_PATH, query)

    @property
    def context(self):
        'Read only snapshot of the connection handed to a login flow.'

        return LoginContext(
            account=self.require(ACCOUNT),
            user=self.require(USER),
            password=self.require(PASSWORD),
            host=self.require(HOST),
            scheme=self.scheme,
            port=self.properties.get(PORT),
            connection_timeout=self.connection_timeout,
            application=self.properties.get(APPLICATION),
            authenticator_url=self.build_url(AUTHENTICATOR_REQUEST_PATH),
            login_url=self.login_url(),
        )

    async def send(self, http_request):
        '''Perform an HttpRequest with requests in a worker thread, returns
        the requests.Response.

        Cancelling the awaiting task aborts the request: its connection is
        shut down and the worker thread is given ABORT_TIMEOUT seconds to
        unwind before CancelledError propagates.'''

        call = functools.partial(self.http.request,
                                 http_request.method, http_request.url,
                                 headers=http_request.headers,
                                 params=http_request.params,
                                 json=http_request.json,
                                 timeout=http_request.timeout)
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self.executor, call)
        future.add_done_callback(_consume_result)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            LOG.debug('Aborting %s %s', http_request.method,
                      redact_url(http_request.url))
            self.adapter.abort()
            await asyncio.wait((future,), timeout=ABORT_TIMEOUT)
            raise

    def process_login_response(self, body):
        '''Record the tokens issued by a successful platform login, returns
        the response data.'''

        filter_failed_response(body)
        data = body.get('data') or {}
        self.token = data.get('token')
        self.master_token = data.get('masterToken')
        self.session_id = data.get('sessionId')
        self.login_data = data
        return data

    async def login_via_idp(self, idp_url=None, cancel_event=None,
                            postback_extractor=None):
        '''Log in through the external IdP. idp_url defaults to the
        AUTHENTICATOR connection property.'''

        if idp_url is None:
            idp_url = self.require(AUTHENTICATOR)
        if not is_federated_authenticator(idp_url):
            raise ValueError('authenticator "%s" is not an https IdP URL' % idp_url)

        flow = FederatedLoginFlow(self.context, idp_url, self,
                                  self.process_login_response,
                                  postback_extractor, self.log_categories)
        return await flow.run(cancel_event)

    def close(self):
        self.http.close()
        self.executor.shutdown(wait=False)

    def format_login_result(self, msg=None):
        with StringIO() as buf:
            if msg:
                buf.write(msg)
                buf.write('\n')
            buf.write('  session_id: %s\n' % self.session_id)
            buf.write('  token: %s\n' % (REDACTED if self.token else None))
            buf.write('  master_token: %s\n' %
                      (REDACTED if self.master_token else None))
            return buf.getvalue()

#---------------------------- Script Main Function -----------------------------

# Usage text

usage_text = '''\
Usage:
======

Use the -h or --help command line option to display all command line
options and get basic usage info.

The tool requires the following pieces of information to run:

-a --account, --host:

The platform account and the host name of the platform endpoint to
log in to.

-i --idp-url:

The https URL of the IdP configured as the connection's authenticator.
The SSO and token URLs the platform hands out must be on this host.

-u --user:

The user name the IdP will authenticate.

-p --password:

The user password used to authenticate with. If it's not supplied
on the command line the tool will prompt for it.

The tool will emit varying levels of diagnostic information as it
runs. See the --log-categories command line option to see how to
control the verbosity and/or type of information displayed.
'''

# Script argument parsing utilities

log_categories_help = '''\

You can enable or disable certain categories of logging to increase or
decrease the output verbosity or to limit the output to specific areas
of interest. The available log categories are %s. This option takes a
comma (,) separated list of categories which adds or removes a
category from the default category set, which are %s.  If the category
is prefixed with an exclamation point (!) the category is removed from
the set, otherwise it is added.  For example to remove the login-result
category and add the http-content category to the default set use
--log-categories "!login-result,http-content"''' % (
    sorted(valid_log_categories), sorted(default_log_categories))


class LogCategoryAction(argparse.Action):
    def __init__(self, option_strings, dest, nargs=None, **kwargs):
        if nargs is not None:
            raise ValueError("nargs not allowed")
        super(LogCategoryAction, self).__init__(option_strings, dest, **kwargs)

    def __call__(self, parser, namespace, values, option_string=None):
        log_categories = set(getattr(namespace, self.dest))
        for category in values.split(','):
            if not category:
                continue

            adding = True
            if category.startswith('!'):
                adding = False
                category = category[1:]

            if category not in valid_log_categories:
                msg = ('invalid log category "%s", valid categories are %s' %
                       (values, sorted(valid_log_categories)))
                raise argparse.ArgumentError(self, msg)

            if adding:
                log_categories.add(category)
            else:
                log_categories.discard(category)

        setattr(namespace, self.dest, frozenset(log_categories))

def build_parser():
    parser = argparse.ArgumentParser(description='Federated SAML login via an external IdP',
                                     formatter_class=argparse.RawDescriptionHelpFormatter,
                                     epilog=usage_text)

    parser.add_argument('-a', '--account', required=True,
                        help='platform account name')

    parser.add_argument('--host', required=True,
                        help='platform host name')

    parser.add_argument('--scheme', default='https',
                        help='platform URL scheme')

    parser.add_argument('--port', type=int,
                        help='platform port')

    parser.add_argument('-i', '--idp-url', required=True,
                        help='IdP URL configured as the authenticator')

    parser.add_argument('-u', '--user', required=True,
                        help='user id for IdP login')

    parser.add_argument('-p', '--password',
                        help='user password for IdP login, '
                        'if not supplied will prompt on terminal')

    parser.add_argument('--connection-timeout', type=int,
                        default=DEFAULT_CONNECTION_TIMEOUT,
                        help='timeout in seconds of the platform requests')

    parser.add_argument('--database', help='default database of the session')
    parser.add_argument('--schema', help='default schema of the session')
    parser.add_argument('--warehouse', help='default warehouse of the session')
    parser.add_argument('--role', help='default role of the session')

    parser.add_argument('--postback-parser',
                        choices=sorted(POSTBACK_EXTRACTORS),
                        default=ScanningPostbackExtractor.name,
                        help='how the postback URL is found in the SAML '
                        'response HTML')

    parser.add_argument('-l', '--log-categories',
                        action=LogCategoryAction, dest='log_categories',
                        default=default_log_categories,
                        help=log_categories_help)

    parser.add_argument('--log-file',
                        help='log to file pathname instead of the console')

    parser.add_argument('--show-traceback', action='store_true',
                        help='If an exception is raised print the stack '
                        'trace. This is helpful when diagnosing errors')

    return parser

def connection_properties(options):
    return {
        ACCOUNT: options.account,
        USER: options.user,
        PASSWORD: options.password,
        HOST: options.host,
        SCHEME: options.scheme,
        PORT: options.port,
        CONNECTION_TIMEOUT: options.connection_timeout,
        AUTHENTICATOR: options.idp_url,
        DATABASE: options.database,
        SCHEMA: options.schema,
        WAREHOUSE: options.warehouse,
        ROLE: options.role,
    }

async def run_login(options):
    '''Run one federated login for the command line options. Ctrl-C
    cancels the login.'''

    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    handle_sigint = sys.platform != 'win32'
    if handle_sigint:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)

    session = LoginSession(connection_properties(options),
                           options.log_categories)
    try:
        extractor = POSTBACK_EXTRACTORS[options.postback_parser]()
        await session.login_via_idp(options.idp_url, cancel_event, extractor)
    finally:
        session.close()
        if handle_sigint:
            loop.remove_signal_handler(signal.SIGINT)

    if 'login-result' in options.log_categories:
        LOG.info(session.format_login_result(banner('Login Result')))
    return session

#### Main Function ####

def main(argv=None):
    result = 0

    parser = build_parser()
    options = parser.parse_args(argv)

    if not is_federated_authenticator(options.idp_url):
        parser.error('--idp-url must be an https URL')

    if options.password is None:
        options.password = getpass.getpass('Enter password for "%s": '
                                           % (options.user))

    setup_logging(options, options.log_categories)

    try:
        asyncio.run(run_login(options))
    except Exception as e:
        if options.show_traceback:
            LOG.exception('Federated login failed')
        LOG.error('%s' % (e))
        result = 1

    return result
#-------------------------------------------------------------------------------

if __name__ == '__main__':
    sys.exit(main())
