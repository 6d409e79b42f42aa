#!/usr/bin/python3
### Api
user = 'yourapiuser'
password = 'yourapipassword'

#Keep empty if not in a Multiple CMA environment
domain_name = ''
#Your checkpoint management server
url = '1.1.5.1'

api_wait_time=1
publish_wait_time=1
#Give up waiting for a publish after this many polls
publish_max_polls=120
api_timeout=60
#Keep False for self-signed management certificates
verify_ssl = False

#Passed to every set-group call
ignore_warnings = False
ignore_errors = False

### Files
#Desired memberships, a json list of resources
DESIRED_STATE_FILE = 'memberships.json'
#Identifiers and fields of the memberships already managed
STATE_FILE = 'memberships.state.json'
LOCK_FILE = '/tmp/membership_sync.lock'
LOG_FILE = 'membership_sync.log'

ENABLE_EMAIL_REPORTING = True

EMAIL_SUBJECT = "Membership Sync Report"
EMAIL_FROM = "user@domain"
EMAIL_TO = ["user@domain"]
SMTP_SERVER = "smtpserver"
SMTP_PORT = 25
