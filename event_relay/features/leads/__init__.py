"""Lead capture: landing submissions and the email consumers."""
