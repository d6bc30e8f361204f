"""Page markers for the identity provider and webmail UIs.

Every tuple is ordered: earlier entries are more specific and are tried
first. The stages treat these as data so that a changed provider page
usually means editing this module only.
"""

from __future__ import annotations

# --- Credential stage ---

EMAIL_INPUT = 'input[type="email"]'
EMAIL_PREFILLED = "#userDisplayName"
SUBMIT_BUTTON = 'button[type="submit"]'
PASSWORD_INPUT = 'input[type="password"]'
SKIP_SECOND_FACTOR = "#idA_PWD_SwitchToPassword"

SWITCH_TO_PASSWORD = (
    'button:has-text("Use your password")',
    'a:has-text("Use your password")',
    "text=/use your password/i",
    'button:has-text("Sign in with password")',
    "text=/sign in with password/i",
    'button:has-text("Use a password")',
    "text=/use a password/i",
)

# Full phrases required when scanning arbitrary buttons and links.
SWITCH_TO_PASSWORD_PHRASES = (
    "use your password",
    "sign in with password",
    "sign in with your password",
    "use a password",
    "use password",
)

BUTTONS_AND_LINKS = "button, a"
BUTTONS = "button"

# --- Code challenge ---

CODE_FLOW_MARKERS = (
    "text=Get a code to sign in",
    'button:has-text("Send code")',
    'button:has-text("Send")',
    'button[aria-label="Send code"]',
    "#idDiv_SAOTCS_Proofs",
    "text=/Enter your code/i",
    "text=/Enter the code we sent/i",
)

SEND_CODE_BUTTONS = (
    'button:has-text("Send code")',
    'button[aria-label="Send code"]',
    'button[data-testid="primaryButton"]',
    'button:has-text("Send")',
    'button:has-text("Continue")',
    'button:has-text("Next")',
)

OTP_ERROR_MARKERS = (
    "text=/that code is incorrect/i",
    "text=/enter your code/i",
    "text=/the code you entered/i",
    "text=/check the code and try again/i",
    "text=/code.*incorrect/i",
)

OTP_INPUTS = 'input[name="otc"], input[maxlength="1"], input[type="tel"], input[aria-label*="digit"]'
OTP_SINGLE_INPUT = 'input[name="otc"], input[type="text"], input[type="tel"]'
OTP_CONTAINERS = ('[data-testid="otpInputs"]', "#otcContainer", 'div[role="main"]', "form")
OTP_DIGIT_BOXES = 'input[maxlength="1"], input[aria-label*="digit"], input[aria-label*="code"]'
OTP_DIGIT_BOXES_PAGE = 'input[maxlength="1"], input[type="tel"][maxlength="1"]'
OTC_INPUT = 'input[name="otc"]'

# --- Authenticator code reveal (TOTP) ---

OTHER_WAYS = (
    "#signInAnotherWay",
    'a:has-text("Other ways to sign in")',
    'button:has-text("Other ways to sign in")',
    "text=/sign in another way/i",
    "text=/other ways to sign in/i",
)

USE_AUTHENTICATOR_CODE = (
    'div[role="button"]:has-text("Use a verification code")',
    'button:has-text("Use a verification code")',
    "text=/use a verification code/i",
    "text=/use a code from (my|your) authenticator app/i",
)

# --- Push approval ---

PUSH_NUMBER = (
    "#displaySign",
    'div[data-testid="displaySign"]>span',
    "text=Approve sign-in",
    "text=Approve",
)
PUSH_NUMBER_STRICT = '#displaySign, div[data-testid="displaySign"]>span'
PUSH_RETRY_BUTTONS = (
    'button[aria-describedby="pushNotificationsTitle errorDescription"]',
    'button[data-testid="primaryButton"]',
    'button:has-text("Try again")',
    'button:has-text("Resend")',
)
PUSH_CONFIRM_SEND = 'button[aria-describedby="confirmSendTitle"], button:has-text("Send")'
PUSH_FORM = 'form[name="f1"]'
PRIMARY_BUTTON = 'button[data-testid="primaryButton"]'

# --- Prompts ---

KNOWN_PROMPTS = (
    "button#idBtn_Back",
    "button#idSIButton9",
    'button:has-text("No")',
    "button:has-text(\"Don't show again\")",
    'button:has-text("Skip")',
    'button:has-text("Not now")',
    'button:has-text("Continue")',
    'input[type="button"][value="No"]',
)
DIALOG_OVERLAY = '[role="dialog"], .modal, .ms-Dialog, .overlay'

WELCOME_CLOSE = (
    'button[aria-label="Close"]',
    'button[aria-label="Close dialog"]',
    'button[title="Close"]',
    'button[aria-label="Dismiss"]',
    ".ms-Dialog button[aria-label=\"Close\"]",
    "#popUpModal .close",
    ".dashboardPopUpModal .close",
    'div[role="dialog"] button',
)

PASSKEY_PROMPTS = (
    'button:has-text("Use your passkey")',
    'button:has-text("Use Windows Hello")',
    'button:has-text("Use security key")',
    'button:has-text("Use a different method")',
    "text=Use your password",
    'button[data-testid="secondaryButton"]',
)

# --- Security ---

HEADINGS = ('[data-testid="title"]', "#iSelectProofTitle", "h1", "h2", '[role="heading"]', "title")

# --- Webmail ---

MAIL_READY = 'div[role="main"], div[role="list"]'
MAIL_IDENTIFIER = 'input[type="email"], input[name="identifier"]'
MAIL_PASSWORD = 'input[type="password"], input[name="password"]'
MAIL_THREAD_ROWS = 'tr.zA, div[role="listitem"]'
MAIL_ROW_TIME = ("td.xW span", "span[title]", "abbr", "span[aria-label]")
MAIL_MESSAGE_CONTAINERS = ('div.adn', 'div[role="listitem"]', "article")
MAIL_MESSAGE_TIME = ("span.g3[title]", "span[title]", "abbr", "time")
MAIL_BODIES = (
    "div.a3s",
    "div.ii.gt",
    'div[aria-label="Message Body"]',
    'div[role="main"] article',
    'div[role="listitem"]',
    "article",
)
