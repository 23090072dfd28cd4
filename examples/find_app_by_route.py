"""Look up the app behind a route (i.e. host.domain) using the session of
the cf CLI, then show where it lives and whether it is running.
"""
import sys
import json
import cf_lookup_route


print('----------')
config = cf_lookup_route.load_config()
config.assert_api_endpoint()
config.assert_logged_in()
cf_lookup_route.refresh_access_token(config)
cc = cf_lookup_route.CloudController(config)
print('Using session for {}'.format(config.base_url))

print('----------')
route_url = input('route url: ').strip()  # myapp.changeme.com

print('----------')
org, space, app = cf_lookup_route.lookup_route(cc, route_url)
print('{} / {} / {} is {}'.format(org.name, space.name, app.name, app.state))

print('----------')
json.dump({'organization': org, 'space': space, 'app': app}, sys.stdout,
          indent=2, default=lambda o: o.data)
print()
