"""Domain models: ad accounts, campaign and sales insights, store ranking and users."""