"""Policy lists used by tenant input validation."""

RESERVED_USERNAMES = frozenset(
    {
        "admin",
        "administrator",
        "root",
        "system",
        "wp-admin",
        "wordpress",
        "api",
        "www",
        "mail",
        "ftp",
        "smtp",
        "app",
        "dashboard",
        "login",
        "register",
        "tenant",
        "support",
    }
)

DISPOSABLE_EMAIL_DOMAINS = frozenset(
    {
        "tempmail.com",
        "throwaway.email",
        "guerrillamail.com",
        "10minutemail.com",
        "mailinator.com",
        "trashmail.com",
        "yopmail.com",
        "fakeinbox.com",
        "maildrop.cc",
    }
)

COMMON_PASSWORDS = frozenset(
    {
        "123456",
        "password",
        "123456789",
        "12345678",
        "12345",
        "1234567",
        "password1",
        "123123",
        "1234567890",
        "000000",
        "qwerty",
        "1234",
        "abc123",
        "password123",
        "iloveyou",
        "welcome",
        "monkey",
        "admin",
        "letmein",
        "dragon",
        "sunshine",
        "princess",
        "football",
        "qwerty123",
    }
)

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 60
PASSWORD_MIN_LENGTH = 12
PASSWORD_MAX_LENGTH = 128
PASSWORD_MIN_CLASSES = 3
PHONE_MIN_DIGITS = 8
PHONE_MAX_DIGITS = 15
SUBDOMAIN_MIN_LENGTH = 3
SUBDOMAIN_MAX_LENGTH = 63
COMPANY_NAME_MAX_LENGTH = 255
