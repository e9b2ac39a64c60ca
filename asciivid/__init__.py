"""Convert videos into colored ASCII art videos."""
