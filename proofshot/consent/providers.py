"""Known consent-management vendors and the page artifacts they leave behind.

The tables in this module drive the consent resilience layers: URL substrings
of consent and tracking providers (layer 1), localStorage keys and cookies
that signal consent was already given (layer 2), overlay selectors hidden by
CSS (layer 3) and the content container selectors used for element capture
(layer 4).
"""

from typing import Dict, List, Tuple


# Layer 1: lowercase substrings matched against request URLs
CONSENT_PROVIDER_PATTERNS: List[str] = [
    # Consent management platforms
    'onetrust',
    'cookiebot',
    'quantcast',
    'trustarc',
    'klaro',
    'cookiepro',
    'cookielaw',
    'cookieconsent',
    'osano',
    'termly',
    'iubenda',
    'cookiefirst',
    'usercentrics',
    'didomi',
    'consentmanager',
    'cookieyes',
    'complianz',
    'borlabs',
    'cookie-script',

    # Generic consent markers
    'consent',
    'gdpr',
    'cookie-banner',
    'cookie-notice',
    'privacy-banner',
    'cmp',
]

# Resource types intercepted by layer 1; "iframe" is a document requested by a child frame
BLOCKABLE_RESOURCE_TYPES: Tuple[str, ...] = ('script', 'xhr', 'fetch', 'iframe')

# Layer 2: localStorage entries. "{now}" becomes an ISO timestamp and
# "{stamp}" epoch milliseconds when the init script runs.
CONSENT_LOCAL_STORAGE: Dict[str, str] = {
    # OneTrust
    'OptanonConsent': 'groups=C0001:1,C0002:1,C0003:1,C0004:1&datestamp={now}',
    'OptanonAlertBoxClosed': '{now}',

    # Cookiebot
    'CookieConsent': (
        '{"necessary":true,"preferences":true,"statistics":true,'
        '"marketing":true,"stamp":{stamp}}'
    ),
    'CookieConsentBulkSetting': '{"stamp":{stamp}}',

    # Generic flags
    'cookieConsent': 'true',
    'cookiesAccepted': 'true',
    'gdprConsent': 'true',
    'privacyConsent': 'true',
    'acceptedCookies': 'all',
    'cookie-agreed': '2',
    'cookie_notice_accepted': 'true',

    # TrustArc
    'notice_preferences': '2:',
    'notice_gdpr_prefs': '0,1,2:',

    # Osano
    'osano_consentmanager': '{"consent":true}',

    # Usercentrics
    'uc_settings': '{"consent":{"status":true}}',
}

# Window globals set alongside the localStorage entries
CONSENT_WINDOW_FLAGS: List[str] = [
    'cookieConsentGiven',
    'gdprConsent',
    'privacyAccepted',
    'hasConsent',
    'cookiesAccepted',
]

# Layer 2: first-party cookies, (name, value); "{now}" as above
CONSENT_COOKIES: List[Tuple[str, str]] = [
    ('cookieconsent_status', 'dismiss'),
    ('cookie_consent', 'true'),
    ('gdpr_consent', 'true'),
    ('cookies_accepted', 'all'),
    ('privacy_consent', 'accepted'),
    ('OptanonAlertBoxClosed', '{now}'),
    ('CookieConsent', 'true'),
]

CONSENT_COOKIE_TTL_SECONDS = 365 * 24 * 60 * 60

# Layer 3: elements hidden by the suppression stylesheet
OVERLAY_SELECTORS: List[str] = [
    # Attribute matches
    '[id*="cookie" i]',
    '[id*="consent" i]',
    '[id*="gdpr" i]',
    '[id*="privacy" i]',
    '[id*="banner" i]',
    '[id*="notice" i]',
    '[class*="cookie" i]',
    '[class*="consent" i]',
    '[class*="gdpr" i]',
    '[class*="privacy" i]',
    '[class*="banner" i]',
    '[class*="notice" i]',
    '[class*="overlay" i]',
    '[class*="modal" i]',

    # Known vendor containers
    '#onetrust-consent-sdk',
    '#onetrust-banner-sdk',
    '.onetrust-pc-dark-filter',
    '#CybotCookiebotDialog',
    '#CybotCookiebotDialogBodyUnderlay',
    '#cookiescript_injected',
    '.cc-window',
    '.cookie-banner',
    '.cookie-notice',
    '.gdpr-banner',
    '.privacy-notice',

    # Dialogs labelled as consent prompts
    '[role="dialog"][aria-label*="cookie" i]',
    '[role="dialog"][aria-label*="consent" i]',
    '[role="dialog"][aria-label*="privacy" i]',
]

# Layer 4: content containers, in priority order
CONTENT_SELECTORS: List[str] = [
    'main',
    'article',
    '#content',
    '#main-content',
    '[role="main"]',
    '.main-content',
    '.content',
]

# Vendor JS APIs answered with "consent granted" so scripts that did load stay quiet
CMP_API_STUBS = '''
    if (!window.__proofshotCmpStubs) {
        window.__proofshotCmpStubs = true;

        window.__tcfapi = function(command, version, callback) {
            if (typeof callback !== 'function') { return; }
            if (command === 'ping') {
                callback({gdprApplies: false, cmpLoaded: true, cmpStatus: 'loaded',
                          displayStatus: 'hidden', apiVersion: '2.0'}, true);
            } else if (command === 'getTCData' || command === 'addEventListener') {
                setTimeout(() => callback({tcString: '', gdprApplies: false,
                                           eventStatus: 'tcloaded', cmpStatus: 'loaded'}, true), 0);
            } else {
                callback({}, true);
            }
        };

        window.__cmp = function(command, parameter, callback) {
            if (typeof callback !== 'function') { return; }
            if (command === 'ping') {
                callback({gdprAppliesGlobally: false, cmpLoaded: true}, true);
            } else {
                callback({consentData: '', gdprApplies: false, hasGlobalScope: false}, true);
            }
        };

        window.OneTrust = window.OneTrust || {};
        window.OneTrust.IsAlertBoxClosed = () => true;
        window.OneTrust.IsAlertBoxClosedAndValid = () => true;
        window.OneTrust.Close = () => {};
        window.OneTrust.AllowAll = () => {};
        window.OneTrust.RejectAll = () => {};
        window.OneTrust.ToggleInfoDisplay = () => {};
        window.OneTrust.OnConsentChanged = (cb) => { if (typeof cb === 'function') { cb(); } };
        window.OptanonWrapper = window.OptanonWrapper || function() {};

        window.Cookiebot = window.Cookiebot || {};
        window.Cookiebot.consent = {necessary: true, preferences: true, statistics: true, marketing: true};
        window.Cookiebot.consented = true;
        window.Cookiebot.declined = false;
        window.Cookiebot.hasResponse = true;
        window.Cookiebot.show = () => {};
        window.Cookiebot.hide = () => {};
        window.Cookiebot.renew = () => {};
        window.Cookiebot.withdraw = () => {};
    }
'''
