"""Session cart, checkout and mobile money payment confirmation."""
