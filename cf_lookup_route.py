# Copyright 2020 Philips HSDP
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Look up the organization, space and app that own a Cloud Foundry route.

    $ cf-lookup-route lookup-route myapp.example.com
    Organization: my-org (3b5d...)
    Space: dev (8c1f...)
    App: myapp (a6e0...)
"""
import os
import sys
import copy
import json
import time
import argparse
import functools
import requests
from base64 import urlsafe_b64decode
from requests.exceptions import HTTPError
from urllib.parse import urlencode, quote


def jwt_decode(jwt):
    """Decodes a JWT token. It is useful primarily to introspect a UAA JWT
    token without making a request to UAA. A leading ``bearer`` scheme, as
    stored by the cf CLI, is ignored.

    WARNING: jwt_decode() does NOT verify the token's signature. DO NOT rely on
    this to verify a token signature.

    Args:
        jwt (str): JWT token string

    Returns:
        dict: A dictionary of the token's attributes"""
    parts = _strip_scheme(jwt).split('.', 2)
    if len(parts) != 3:
        raise ConfigException('JWT is invalid: {}'.format(jwt))
    try:
        # add extra padding (==) to avoid b64decode errors
        data = urlsafe_b64decode(parts[1] + '==').decode('utf-8')
        data = json.loads(data)
    except ValueError:
        raise ConfigException('JWT is invalid: {}'.format(jwt))
    if not isinstance(data, dict):
        raise ConfigException('JWT is invalid: {}'.format(jwt))
    return data


def is_jwt(token):
    return token is not None and len(_strip_scheme(token).split('.')) == 3


def is_expired(jwt, now):
    data = jwt_decode(jwt)
    if 'exp' not in data:
        raise ConfigException('JWT expiration not found: {}'.format(data))
    try:
        exp = int(data['exp'])
    except (TypeError, ValueError):
        raise ConfigException('JWT expiration is invalid: {}'.format(data))
    return exp <= now


def _strip_scheme(token):
    if token.lower().startswith('bearer '):
        return token[len('bearer '):]
    return token


class CFException(Exception):
    """Base class of all exceptions raised by this module. The message can be
    prefixed with the name of the step that failed using ``with_context()``,
    which keeps the exception's type and attributes intact."""

    msg = None

    def __init__(self, msg):
        super(CFException, self).__init__(msg)
        self.msg = msg

    def __str__(self):
        return self.msg

    def with_context(self, context):
        """Prefixes the message with ``<context>: ``

        Args:
            context (str): name of the failing step

        Returns:
            CFException: this exception"""
        self.msg = '{}: {}'.format(context, self.msg)
        self.args = (self.msg,)
        return self


class ConfigException(CFException):
    config = None

    def __init__(self, msg, config=None):
        super(ConfigException, self).__init__(msg)
        self.config = config


class RequestException(CFException):
    """Indicates that the API could not be reached at all"""

    error = None

    def __init__(self, msg, error=None):
        super(RequestException, self).__init__(msg)
        self.error = error


class ResponseException(CFException):
    """Indicates that the API answered with an unexpected status code"""

    response = None

    def __init__(self, msg, response=None):
        super(ResponseException, self).__init__(msg)
        self.response = response

    @property
    def status_code(self):
        if self.response is None:
            return None
        return self.response.status_code

    @property
    def body(self):
        if self.response is None:
            return None
        return self.response.text


class DecodeException(CFException):
    """Indicates that a response body is not JSON or does not have the
    expected shape"""

    data = None

    def __init__(self, msg, data=None):
        super(DecodeException, self).__init__(msg)
        self.data = data


class LookupException(CFException):
    """Indicates that a route could not be resolved to exactly one app"""
    pass


def step(name):
    """Decorates a function so that any CFException it raises is prefixed
    with ``name``, e.g. ``get domains: found ...``"""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except CFException as e:
                e.with_context(name)
                raise
        return wrapper
    return decorator


class Config(object):
    """Config holds the session of a single Cloud Foundry API endpoint. It is
    normally created by ``load_config()`` from the cf CLI's session and passed
    explicitly to everything that needs it."""

    base_url = None
    """The API base url, e.g. https://api.example.com"""

    access_token = None
    """The access token, with or without a leading ``bearer`` scheme"""

    refresh_token = None
    """The UAA refresh token used to renew an expired access token"""

    uaa_url = None
    """The UAA base url"""

    client_id = 'cf'
    """The UAA client ID; defaults to 'cf'"""

    client_secret = ''
    """The UAA client secret; defaults to ''"""

    verify_ssl = True
    """Indicates whether TLS certificates are verified"""

    verbose = False
    """Indicates to print each request url to stderr"""

    def __init__(self, **settings):
        for name, value in settings.items():
            if name.startswith('_') or not hasattr(self.__class__, name) or \
                    callable(getattr(self.__class__, name)):
                raise ConfigException(
                    'Unknown config setting: {}'.format(name), self)
            setattr(self, name, value)

    def has_api_endpoint(self):
        return bool(self.base_url)

    def is_logged_in(self):
        return bool(self.access_token)

    def assert_api_endpoint(self):
        if not self.has_api_endpoint():
            raise ConfigException('no API endpoint set', self)

    def assert_logged_in(self):
        if not self.is_logged_in():
            raise ConfigException('not logged in', self)


cf_cli_settings = {
    'Target': 'base_url',
    'AccessToken': 'access_token',
    'RefreshToken': 'refresh_token',
    'AuthorizationEndpoint': 'uaa_url',
    'UaaEndpoint': 'uaa_url',
    'UAAOAuthClient': 'client_id',
    'UAAOAuthClientSecret': 'client_secret',
}
"""Maps cf CLI ``config.json`` keys to Config attributes. Later keys take
precedence, so UaaEndpoint wins over AuthorizationEndpoint."""

env_settings = {
    'CF_URL': 'base_url',
    'CF_ACCESS_TOKEN': 'access_token',
    'CF_REFRESH_TOKEN': 'refresh_token',
    'CF_UAA_URL': 'uaa_url',
    'CF_CLIENT_ID': 'client_id',
    'CF_CLIENT_SECRET': 'client_secret',
}


def read_cf_cli_config(path):
    """Reads the session written by ``cf login``. A missing file means there
    is no session and yields no settings.

    Args:
        path (str): path to the cf CLI's config.json

    Returns:
        dict: Config settings"""
    if not os.path.exists(path):
        return {}
    try:
        with open(path) as f:
            data = json.load(f)
    except (IOError, ValueError) as e:
        raise ConfigException('read cf config {}: {}'.format(path, e))
    if not isinstance(data, dict):
        raise ConfigException(
            'read cf config {}: expected a JSON object'.format(path))
    settings = {}
    for key, name in cf_cli_settings.items():
        if data.get(key):
            settings[name] = data[key]
    if data.get('SSLDisableHostnameValidation'):
        settings['verify_ssl'] = False
    return settings


def load_config(cf_home=None, environ=None):
    """Builds a Config from the cf CLI session found in
    ``<cf_home>/.cf/config.json`` and lets environment variables override it.

    Args:
        cf_home (str): defaults to $CF_HOME, then the user's home directory
        environ (dict): defaults to os.environ

    Returns:
        Config"""
    if environ is None:
        environ = os.environ
    if cf_home is None:
        cf_home = environ.get('CF_HOME') or os.path.expanduser('~')
    settings = read_cf_cli_config(
        os.path.join(cf_home, '.cf', 'config.json'))
    for env, name in env_settings.items():
        if environ.get(env):
            settings[name] = environ[env]
    if environ.get('CF_SKIP_SSL_VALIDATION') == 'true':
        settings['verify_ssl'] = False
    if environ.get('CF_TRACE') == 'true':
        settings['verbose'] = True
    return Config(**settings)


def build_refresh_request(config):
    """Builds an OAuth refresh_token grant to send to UAA.

    Args:
        config (Config)

    Returns:
        dict: containing the parameters for the UAA OAuth request
    """
    if not config.refresh_token:
        raise ConfigException('Unable to build refresh request.', config)
    return {'grant_type': 'refresh_token',
            'refresh_token': config.refresh_token,
            'client_id': config.client_id,
            'client_secret': config.client_secret}


def token_needs_refresh(config, now=None):
    """An access token is only refreshed when it is a JWT that has expired
    and there is a refresh token and a UAA endpoint to renew it with. Opaque
    tokens are used as they are."""
    if not config.refresh_token or not config.uaa_url:
        return False
    if not is_jwt(config.access_token):
        return False
    try:
        return is_expired(config.access_token,
                          time.time() if now is None else now)
    except ConfigException:
        # dotted but opaque, or without a usable exp claim
        return False


@step('refresh access token')
def refresh_access_token(config, now=None):
    """Renews the config's access token with UAA if it has expired.

    Args:
        config (Config)
        now (float): current unix time; defaults to time.time()

    Returns:
        Config: the original config argument"""
    if not token_needs_refresh(config, now):
        return config
    headers = {'Content-Type': 'application/x-www-form-urlencoded',
               'Accept': 'application/json'}
    data = urlencode(build_refresh_request(config)).encode('utf-8')
    url = '/'.join([config.uaa_url.rstrip('/'), 'oauth/token'])
    if config.verbose:
        print('POST {}'.format(url), file=sys.stderr)
    try:
        res = requests.request('POST', url, data=data, headers=headers,
                               verify=config.verify_ssl)
        res.raise_for_status()
    except HTTPError as e:
        raise ResponseException('received non 2xx status code: {} ({})'
                                .format(e.response.status_code,
                                        e.response.text), e.response)
    except requests.exceptions.RequestException as e:
        raise RequestException('POST {}: {}'.format(url, e), e)
    auth = Response(res).json()
    if not isinstance(auth, dict) or not auth.get('access_token'):
        raise DecodeException('access_token not found in UAA response', auth)
    config.access_token = 'bearer {}'.format(auth['access_token'])
    if auth.get('refresh_token'):
        config.refresh_token = auth['refresh_token']
    return config


class Field(object):
    """Field describes where a resource attribute lives in the API object and
    which JSON type it must have.

    Args:
        path (str): dotted path into the API object,
            e.g. ``relationships.space.data.guid``
        kind (type): the python type the decoded JSON value must have
        required (bool): a missing or null value is a decode error
        default: value used when an optional field is missing or null
    """

    def __init__(self, path, kind, required=True, default=None):
        self.path = path
        self.kind = kind
        self.required = required
        self.default = default

    def extract(self, data, resource_kind):
        value = data
        for key in self.path.split('.'):
            if value is None:
                break
            if not isinstance(value, dict):
                raise DecodeException(
                    'invalid {}: {} must be an object, got {}'.format(
                        resource_kind, self.path, type(value).__name__),
                    data)
            value = value.get(key)
        if value is None:
            if self.required:
                raise DecodeException('invalid {}: {} is missing'.format(
                    resource_kind, self.path), data)
            return copy.copy(self.default)
        if not isinstance(value, self.kind):
            raise DecodeException(
                'invalid {}: {} must be {}, got {}'.format(
                    resource_kind, self.path, self.kind.__name__,
                    type(value).__name__),
                data)
        return value


class Resource(object):
    """Resource wraps an individual v3 API object. The object is checked
    against ``fields`` when it is wrapped, and the declared fields along with
    a handful of helper attributes for accessing common API object keys are
    available as attributes: guid, name, *_url, *_guid"""

    kind = 'resource'
    """Name used in decode errors"""

    fields = {
        'guid': Field('guid', str),
        'created_at': Field('created_at', str, required=False),
        'updated_at': Field('updated_at', str, required=False),
    }
    """Maps attribute names to the Field they are decoded from"""

    data = None
    values = {}

    def __init__(self, data):
        if not isinstance(data, dict):
            raise DecodeException('invalid {}: expected an object, got {}'
                                  .format(self.kind, type(data).__name__),
                                  data)
        self.data = data
        self.values = {name: field.extract(data, self.kind)
                       for name, field in self.fields.items()}

    def get(self, name):
        """Access a key from the resource's data dictionary

        If <name> is a declared field:
            the decoded field value is returned
        If <name> matches *_url:
            .links.<name>.href is returned if it exists else None
        If <name> matches *_guid:
            .relationships.<name>.data.guid is returned if it exists else None
        Else
            .<name> is returned if it exists else None"""
        if name in self.values:
            return self.values[name]
        elif name.endswith('_url'):
            link = (self.data.get('links') or {}).get(name[:-len('_url')])
            return link.get('href') if isinstance(link, dict) else None
        elif name.endswith('_guid'):
            rel = (self.data.get('relationships') or {}) \
                .get(name[:-len('_guid')])
            if not isinstance(rel, dict) or not isinstance(
                    rel.get('data'), dict):
                return None
            return rel['data'].get('guid')
        return self.data.get(name)

    def __repr__(self):
        """Shows the guid and name/host of this object"""
        name = str(self.host or self.name)
        return '\t'.join([str(self.guid), name])

    def __getattr__(self, name):
        """Access a key from the resource's data dictionary"""
        return self.get(name)

    def __getitem__(self, name):
        """Access a key from the resource's data dictionary"""
        return self.get(name)

    def __contains__(self, name):
        """Checks if key is in the resource's data dictionary"""
        return self.get(name) is not None


class Domain(Resource):
    kind = 'domain'
    fields = dict(
        Resource.fields,
        name=Field('name', str),
        internal=Field('internal', bool, required=False, default=False),
        # null, or an object such as {"guid": "..."} for TCP domains
        router_group=Field('router_group', dict, required=False),
        supported_protocols=Field('supported_protocols', list,
                                  required=False, default=[]),
        organization_guid=Field('relationships.organization.data.guid', str,
                                required=False),
    )

    @property
    def router_group_guid(self):
        if self.router_group is None:
            return None
        return self.router_group.get('guid')


class Destination(Resource):
    """A binding of a route to an app process"""

    kind = 'route destination'
    fields = {
        'guid': Field('guid', str, required=False),
        'app_guid': Field('app.guid', str),
        'process_type': Field('app.process.type', str, required=False,
                              default='web'),
        'port': Field('port', int, required=False),
        'protocol': Field('protocol', str, required=False),
    }


class Route(Resource):
    kind = 'route'
    fields = dict(
        Resource.fields,
        host=Field('host', str),
        path=Field('path', str, required=False, default=''),
        port=Field('port', int, required=False),
        protocol=Field('protocol', str, required=False),
        url=Field('url', str, required=False),
        domain_guid=Field('relationships.domain.data.guid', str),
        space_guid=Field('relationships.space.data.guid', str,
                         required=False),
    )

    destinations = None

    def __init__(self, data):
        super(Route, self).__init__(data)
        destinations = data.get('destinations')
        if destinations is None:
            destinations = []
        if not isinstance(destinations, list):
            raise DecodeException('invalid route: destinations must be list, '
                                  'got {}'.format(
                                      type(destinations).__name__), data)
        self.destinations = [Destination(d) for d in destinations]


class App(Resource):
    kind = 'app'
    fields = dict(
        Resource.fields,
        name=Field('name', str),
        state=Field('state', str),
        lifecycle_type=Field('lifecycle.type', str, required=False),
        space_guid=Field('relationships.space.data.guid', str),
    )


class Space(Resource):
    kind = 'space'
    fields = dict(
        Resource.fields,
        name=Field('name', str),
        organization_guid=Field('relationships.organization.data.guid', str),
        quota_guid=Field('relationships.quota.data.guid', str,
                         required=False),
    )


class Organization(Resource):
    kind = 'organization'
    fields = dict(
        Resource.fields,
        name=Field('name', str),
        suspended=Field('suspended', bool, required=False, default=False),
        quota_guid=Field('relationships.quota.data.guid', str,
                         required=False),
    )


class Response(object):
    """Response wraps an API response providing checks for errors and
    simplified methods for decoding the returned resources."""

    response = None
    """Holds underlying requests.Response object"""

    def __init__(self, response):
        self.response = response
        self._data = None

    @property
    def ok(self):
        """Indicates whether the response was successful"""
        return self.response.status_code == 200

    def assert_ok(self):
        if not self.ok:
            raise ResponseException(
                'received non 200 status code: {} ({})'.format(
                    self.response.status_code, self.response.text),
                self.response)
        return self

    def json(self):
        """Returns the JSON parsed response content"""
        if self._data is None:
            try:
                self._data = json.loads(self.response.content)
            except ValueError as e:
                raise DecodeException('invalid JSON: {}'.format(e))
        return self._data

    @property
    def pagination(self):
        data = self.json()
        if isinstance(data, dict) and isinstance(data.get('pagination'), dict):
            return data['pagination']
        return {}

    @property
    def total_pages(self):
        return self.pagination.get('total_pages')

    @property
    def total_results(self):
        return self.pagination.get('total_results')

    @property
    def next_url(self):
        link = self.pagination.get('next')
        return link.get('href') if isinstance(link, dict) else None

    def resources(self, resource_class):
        """Decodes the ``resources`` list of a paginated envelope. Only the
        resources on this page are returned.

        Args:
            resource_class (type): Resource subclass to wrap each object in

        Returns:
            list[Resource]"""
        data = self.json()
        if not isinstance(data, dict) or \
                not isinstance(data.get('resources'), list):
            raise DecodeException('expected a list of {} resources'
                                  .format(resource_class.kind), data)
        return [resource_class(r) for r in data['resources']]

    def resource(self, resource_class):
        """Decodes a single API object

        Args:
            resource_class (type): Resource subclass to wrap the object in

        Returns:
            Resource"""
        return resource_class(self.json())


def _values(values):
    """A single string is one query value, not a list of characters"""
    if isinstance(values, str):
        return [values]
    return list(values)


class CloudController(object):
    """CloudController is a read-only client for the v3 API endpoints needed
    to resolve a route."""

    config = None
    """The config for this client"""

    def __init__(self, config):
        self.config = config

    @classmethod
    def from_token(cls, base_url, access_token, **settings):
        return cls(Config(base_url=base_url, access_token=access_token,
                          **settings))

    @property
    def authorization(self):
        token = self.config.access_token
        if token.lower().startswith('bearer '):
            return token
        return 'bearer {}'.format(token)

    def url(self, path, query=None):
        """Joins the base url, the path and the urlencoded query. Every value
        of a list is sent as its own ``name=value`` pair.

        Args:
            path (str): e.g. /v3/domains
            query (dict[str, list[str]]): query parameters

        Returns:
            str"""
        url = self.config.base_url.rstrip('/') + path
        if query:
            qs = urlencode(sorted(query.items()), doseq=True)
            if qs:
                url = '?'.join([url, qs])
        return url

    def get(self, path, query=None):
        """Sends a GET request with the session's authorization

        Args:
            path (str): URL path below the base url
            query (dict[str, list[str]]): query parameters

        Returns:
            Response: a successful response"""
        url = self.url(path, query)
        if self.config.verbose:
            print('GET {}'.format(url), file=sys.stderr)
        headers = {'Authorization': self.authorization,
                   'Accept': 'application/json'}
        try:
            res = requests.request('GET', url, headers=headers,
                                   verify=self.config.verify_ssl)
        except requests.exceptions.RequestException as e:
            raise RequestException('GET {}: {}'.format(url, e), e)
        return Response(res).assert_ok()

    def list(self, path, resource_class, query):
        res = self.get(path, query)
        resources = res.resources(resource_class)
        # TODO: follow pagination.next.href once callers can tell which of
        # several matches they want
        if self.config.verbose and isinstance(res.total_pages, int) and \
                res.total_pages > 1:
            print('warning: only the first of {} pages of {} was considered'
                  .format(res.total_pages, path), file=sys.stderr)
        return resources

    @step('get domains')
    def get_domains(self, names):
        """Returns the domains visible to the current token with one of the
        given names. Only the first page of results is returned.

        Args:
            names (list[str]|str): a single str is one name

        Returns:
            list[Domain]"""
        return self.list('/v3/domains', Domain, {'names': _values(names)})

    @step('get routes')
    def get_routes(self, hosts, domain_guids):
        """Returns the routes visible to the current token matching the given
        hosts and domains. Only the first page of results is returned.

        Args:
            hosts (list[str]|str)
            domain_guids (list[str]|str)

        Returns:
            list[Route]"""
        return self.list('/v3/routes', Route, {
            'hosts': _values(hosts),
            'domain_guids': _values(domain_guids),
        })

    @step('get app')
    def get_app(self, guid):
        return self.get('/v3/apps/' + quote(guid, safe='')).resource(App)

    @step('get space')
    def get_space(self, guid):
        return self.get('/v3/spaces/' + quote(guid, safe='')).resource(Space)

    @step('get organization')
    def get_organization(self, guid):
        return self.get('/v3/organizations/' + quote(guid, safe='')) \
            .resource(Organization)


def _require_one(resources, kind):
    if len(resources) == 0:
        raise LookupException('found no matching {}'.format(kind))
    if len(resources) > 1:
        raise LookupException('found multiple matching {}'.format(kind))
    return resources[0]


def lookup_route(cc, hostname):
    """Resolves a route hostname to the app it is mapped to, along with the
    app's space and organization. The hostname is split on its first dot into
    the route's host and its domain. The domain, the route and the route's
    destination must each match exactly once; anything else is an error.

    Args:
        cc (CloudController)
        hostname (str): e.g. myapp.example.com

    Returns:
        tuple[Organization, Space, App]"""
    parts = hostname.split('.', 1)
    if len(parts) < 2:
        raise LookupException("'{}' is not a domain".format(hostname))
    host, domain_name = parts

    domain = _require_one(cc.get_domains([domain_name]), 'domains')
    route = _require_one(cc.get_routes([host], [domain.guid]), 'routes')

    if len(route.destinations) == 0:
        raise LookupException('route has no destination')
    if len(route.destinations) > 1:
        raise LookupException('route has multiple destinations')

    app = cc.get_app(route.destinations[0].app_guid)
    space = cc.get_space(app.space_guid)
    org = cc.get_organization(space.organization_guid)
    return org, space, app


def main(argv, config=None):
    args = argparse.ArgumentParser(
        prog='cf-lookup-route',
        description='Lookup routes in the Cloud Foundry API. The session of '
                    'the cf CLI (see `cf login\') is used unless CF_URL and '
                    'CF_ACCESS_TOKEN are set.')
    commands = args.add_subparsers(dest='command')
    commands.required = True
    lookup = commands.add_parser(
        'lookup-route', help='Lookup routes in the cloudfoundry API')
    lookup.add_argument('-v', '--verbose', action='store_true',
                        help='Print each request url to stderr')
    lookup.add_argument('--json', action='store_true',
                        help='Print the organization, space and app as JSON')
    lookup.add_argument('hostname', help='e.g. myapp.example.com')
    args = args.parse_args(argv)

    try:
        if config is None:
            config = load_config()
        if args.verbose:
            config.verbose = True
        config.assert_api_endpoint()
        config.assert_logged_in()
        refresh_access_token(config)
        org, space, app = lookup_route(CloudController(config), args.hostname)
    except CFException as e:
        print('error: {}'.format(e))
        return 1

    if args.json:
        json.dump({'organization': org, 'space': space, 'app': app},
                  sys.stdout, indent=2, default=lambda o: o.data)
        print()
    else:
        print('Organization: {} ({})'.format(org.name, org.guid))
        print('Space: {} ({})'.format(space.name, space.guid))
        print('App: {} ({})'.format(app.name, app.guid))
    return 0


def run():
    sys.exit(main(sys.argv[1:]))


if __name__ == '__main__':
    run()
